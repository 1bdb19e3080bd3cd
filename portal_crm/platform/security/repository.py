from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from portal_crm.platform.security.context import AuthContext
from portal_crm.platform.security.rls import apply_tenant_filter, validate_tenant_write


class BaseRepository:
    resource = ""
    model: Any = None

    def scoped_select(self, ctx: AuthContext) -> Select[Any]:
        return self.apply_scope_query(select(self.model), ctx)

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_tenant_filter(query, self.resource, ctx)

    def get_scoped(self, session: Session, record_id: uuid.UUID, ctx: AuthContext) -> Any | None:
        return session.scalar(self.scoped_select(ctx).where(self.model.id == record_id))

    def validate_write_security(self, client_id: Any, ctx: AuthContext, *, action: str = "write") -> None:
        validate_tenant_write(self.resource, client_id, ctx, action=action)
