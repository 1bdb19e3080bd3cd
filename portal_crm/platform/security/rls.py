from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy.sql import Select

from portal_crm.metrics import observe_tenant_denied
from portal_crm.platform.security.context import AuthContext
from portal_crm.platform.security.errors import AuthorizationError, TenantScopeError


logger = logging.getLogger("portal_crm.security")


def is_admin_bypass(ctx: AuthContext) -> bool:
    return ctx.is_platform_admin


def _client_uuid(ctx: AuthContext) -> uuid.UUID | None:
    if ctx.client_id is None:
        return None
    try:
        return uuid.UUID(str(ctx.client_id))
    except ValueError:
        return None


def apply_tenant_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict every selected model exposing ``client_id`` to the actor's tenant."""

    if is_admin_bypass(ctx):
        return query

    client_id = _client_uuid(ctx)
    if client_id is None:
        observe_tenant_denied(resource, "read")
        raise AuthorizationError(f"No tenant resolved for resource '{resource}'")

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "client_id"):
            query = query.where(getattr(model, "client_id") == client_id)
    return query


def validate_tenant_write(resource: str, client_id: Any, ctx: AuthContext, *, action: str = "write") -> None:
    if is_admin_bypass(ctx):
        return

    if client_id is None or str(client_id) != str(ctx.client_id):
        observe_tenant_denied(resource, action)
        logger.warning(
            "tenant_write_denied",
            extra={"client_id": ctx.client_id, "error": f"{action} denied on {resource}"},
        )
        raise TenantScopeError(resource, str(client_id) if client_id is not None else None)
