from __future__ import annotations

import logging
import math
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portal_crm import audit, events
from portal_crm.core.config import get_settings
from portal_crm.crm.cache import (
    custom_field_values_key,
    custom_fields_key,
    opportunity_relationships_key,
    query_cache,
)
from portal_crm.crm.forms import FieldCoercionError, FormValidationError, UnsupportedFieldTypeError, build_form, coerce_submission
from portal_crm.crm.models import (
    CRMEntityRelationship,
    CRMFieldDefinition,
    CRMFieldValue,
    CRMOpportunity,
)
from portal_crm.crm.repositories import (
    ENTITY_REPOSITORIES,
    field_definition_repository,
    field_value_repository,
    opportunity_repository,
    relationship_repository,
)
from portal_crm.crm.schemas import (
    ENTITY_TYPES,
    VALUE_KIND_BY_FIELD_TYPE,
    BooleanValue,
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldValue,
    FieldValueRead,
    FormRead,
    NumberValue,
    OpportunityCreate,
    OpportunityRead,
    RecordCreate,
    RecordRead,
    RelationshipCreate,
    RelationshipRead,
    SelectValue,
    TextValue,
    field_value_adapter,
)
from portal_crm.metrics import observe_field_value_write
from portal_crm.platform.security.context import AuthContext
from portal_crm.platform.security.errors import AuthorizationError, TenantScopeError
from portal_crm.platform.security.repository import BaseRepository
from portal_crm.tenancy.permissions import ENTITY_READ_PERMISSIONS, ENTITY_WRITE_PERMISSIONS
from portal_crm.tenancy.service import ActorUser, to_auth_context


logger = logging.getLogger("portal_crm.crm")
tracer = trace.get_tracer("portal_crm.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _tenant_context(actor_user: ActorUser) -> AuthContext:
    # CRM rows are private to a tenant; platform admins get no bypass here.
    return replace(to_auth_context(actor_user), is_platform_admin=False)


def _require(actor_user: ActorUser, permission: str) -> None:
    if not actor_user.has(permission):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _validate_entity_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid entity_type")


def _get_in_tenant(
    session: Session,
    repository: BaseRepository,
    record_id: uuid.UUID,
    ctx: AuthContext,
    not_found: str,
) -> Any:
    try:
        row = repository.get_scoped(session, record_id, ctx)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=not_found)
    return row


def _get_for_write(
    session: Session,
    repository: BaseRepository,
    record_id: uuid.UUID,
    ctx: AuthContext,
    not_found: str,
    *,
    action: str,
) -> Any:
    row = session.get(repository.model, record_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=not_found)
    try:
        repository.validate_write_security(row.client_id, ctx, action=action)
    except TenantScopeError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=not_found)
    return row


def _list_in_tenant(session: Session, repository: BaseRepository, ctx: AuthContext, *order_by: Any) -> list[Any]:
    try:
        stmt = repository.scoped_select(ctx)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return list(session.scalars(stmt.order_by(*order_by)).all())


class FieldDefinitionService:
    def list_definitions(self, session: Session, entity_type: str, actor_user: ActorUser) -> list[FieldDefinitionRead]:
        _validate_entity_type(entity_type)
        _require(actor_user, "read_custom_fields")
        ctx = _tenant_context(actor_user)

        def load() -> list[FieldDefinitionRead]:
            try:
                rows = field_definition_repository.list_for_entity(session, entity_type, ctx)
            except AuthorizationError as exc:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
            return [self._to_definition_read(row) for row in rows]

        return list(query_cache.get_or_load(custom_fields_key(ctx.client_id, entity_type), load))

    def create_definition(
        self,
        session: Session,
        entity_type: str,
        dto: FieldDefinitionCreate,
        actor_user: ActorUser,
    ) -> FieldDefinitionRead:
        _validate_entity_type(entity_type)
        _require(actor_user, "manage_custom_fields")
        ctx = _tenant_context(actor_user)
        if actor_user.client_id is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tenant resolved for custom fields")

        name = dto.name.strip()
        if not name:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name must not be blank")
        options = self._validate_options(dto.field_type, dto.options)
        if self._name_taken(session, actor_user.client_id, entity_type, name):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="custom field name already exists")

        definition = CRMFieldDefinition(
            client_id=actor_user.client_id,
            entity_type=entity_type,
            name=name,
            description=(dto.description or "").strip() or None,
            field_type=dto.field_type,
            is_required=dto.is_required,
            is_unique=dto.is_unique,
            options=options,
            order_index=field_definition_repository.next_order_index(session, entity_type, ctx),
        )
        session.add(definition)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="custom field name already exists")
        session.refresh(definition)

        read_model = self._to_definition_read(definition)
        audit.record(
            actor_user.user_id,
            str(actor_user.client_id),
            "custom_field",
            str(definition.id),
            "create",
            None,
            read_model.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "crm.custom_field.created",
                actor_user.client_id,
                {"entity_type": entity_type, "field_id": str(definition.id)},
            )
        )
        logger.info(
            "custom_field_created",
            extra={"client_id": str(actor_user.client_id), "entity_type": entity_type, "field_id": str(definition.id)},
        )
        return read_model

    def update_definition(
        self,
        session: Session,
        field_id: uuid.UUID,
        dto: FieldDefinitionUpdate,
        actor_user: ActorUser,
    ) -> FieldDefinitionRead:
        _require(actor_user, "manage_custom_fields")
        ctx = _tenant_context(actor_user)
        definition: CRMFieldDefinition = _get_for_write(
            session, field_definition_repository, field_id, ctx, "custom field not found", action="update"
        )

        payload = dto.model_dump(exclude_unset=True)
        before = self._to_definition_read(definition).model_dump(mode="json")
        previous_type = definition.field_type
        new_type = payload.get("field_type") or previous_type

        if "options" in payload:
            options = payload["options"]
        else:
            options = definition.options if new_type == "select" else None
        options = self._validate_options(new_type, options)

        if payload.get("name") is not None:
            name = payload["name"].strip()
            if not name:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name must not be blank")
            if name != definition.name and self._name_taken(session, definition.client_id, definition.entity_type, name):
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="custom field name already exists")
            definition.name = name
        if "description" in payload:
            definition.description = (payload["description"] or "").strip() or None
        for key in ["is_required", "is_unique"]:
            if payload.get(key) is not None:
                setattr(definition, key, payload[key])
        definition.field_type = new_type
        definition.options = options
        definition.updated_at = utcnow()

        cleared = 0
        if VALUE_KIND_BY_FIELD_TYPE[new_type] != VALUE_KIND_BY_FIELD_TYPE[previous_type]:
            cleared = self._clear_values(session, definition.id)
        elif new_type == "select":
            cleared = self._clear_values(session, definition.id, keep=options or [])

        session.add(definition)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="custom field name already exists")
        session.refresh(definition)

        read_model = self._to_definition_read(definition)
        audit.record(
            actor_user.user_id,
            str(definition.client_id),
            "custom_field",
            str(definition.id),
            "update",
            before,
            read_model.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "crm.custom_field.updated",
                definition.client_id,
                {"entity_type": definition.entity_type, "field_id": str(definition.id), "cleared_values": cleared},
            )
        )
        return read_model

    def delete_definition(self, session: Session, field_id: uuid.UUID, actor_user: ActorUser) -> None:
        _require(actor_user, "manage_custom_fields")
        ctx = _tenant_context(actor_user)
        definition: CRMFieldDefinition = _get_for_write(
            session, field_definition_repository, field_id, ctx, "custom field not found", action="delete"
        )
        before = self._to_definition_read(definition).model_dump(mode="json")
        client_id = definition.client_id
        entity_type = definition.entity_type

        cleared = self._clear_values(session, definition.id)
        session.delete(definition)
        session.commit()

        audit.record(actor_user.user_id, str(client_id), "custom_field", str(field_id), "delete", before, None)
        events.publish(
            events.build_envelope(
                "crm.custom_field.deleted",
                client_id,
                {"entity_type": entity_type, "field_id": str(field_id), "cleared_values": cleared},
            )
        )
        logger.info(
            "custom_field_deleted",
            extra={"client_id": str(client_id), "entity_type": entity_type, "field_id": str(field_id)},
        )

    def reorder(
        self,
        session: Session,
        entity_type: str,
        field_ids: list[uuid.UUID],
        actor_user: ActorUser,
    ) -> list[FieldDefinitionRead]:
        """Write ``order_index = position`` for every field of the entity type in one transaction."""

        _validate_entity_type(entity_type)
        _require(actor_user, "manage_custom_fields")
        ctx = _tenant_context(actor_user)
        try:
            rows = field_definition_repository.list_for_entity(session, entity_type, ctx)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        by_id = {row.id: row for row in rows}
        if len(field_ids) != len(set(field_ids)) or set(field_ids) != set(by_id):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="field_ids must list every custom field of the entity type exactly once",
            )

        now = utcnow()
        for position, field_id in enumerate(field_ids):
            row = by_id[field_id]
            if row.order_index != position:
                row.order_index = position
                row.updated_at = now
        session.commit()

        events.publish(
            events.build_envelope(
                "crm.custom_field.reordered",
                actor_user.client_id,
                {"entity_type": entity_type, "field_ids": [str(item) for item in field_ids]},
            )
        )
        ordered = sorted(by_id.values(), key=lambda row: row.order_index)
        return [self._to_definition_read(row) for row in ordered]

    def _name_taken(self, session: Session, client_id: uuid.UUID, entity_type: str, name: str) -> bool:
        existing = session.scalar(
            select(CRMFieldDefinition.id).where(
                CRMFieldDefinition.client_id == client_id,
                CRMFieldDefinition.entity_type == entity_type,
                CRMFieldDefinition.name == name,
            )
        )
        return existing is not None

    def _clear_values(self, session: Session, field_id: uuid.UUID, keep: list[str] | None = None) -> int:
        stmt = delete(CRMFieldValue).where(CRMFieldValue.field_id == field_id)
        if keep is not None:
            rows = session.scalars(select(CRMFieldValue).where(CRMFieldValue.field_id == field_id)).all()
            stale_ids = [row.id for row in rows if row.value not in keep]
            if not stale_ids:
                return 0
            stmt = delete(CRMFieldValue).where(CRMFieldValue.id.in_(stale_ids))
        result = session.execute(stmt)
        return int(result.rowcount or 0)

    def _validate_options(self, field_type: str, options: list[str] | None) -> list[str] | None:
        if field_type == "select":
            if not options:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="options required for select")
            if any(not isinstance(item, str) or not item.strip() for item in options):
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="options must be non-empty strings",
                )
            cleaned = [item.strip() for item in options]
            if len(set(cleaned)) != len(cleaned):
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="options must be unique")
            return cleaned
        if options:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="options only supported for select",
            )
        return None

    def _to_definition_read(self, definition: CRMFieldDefinition) -> FieldDefinitionRead:
        return FieldDefinitionRead.model_validate(definition)


class FieldValueService:
    def get_values(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        actor_user: ActorUser,
    ) -> dict[uuid.UUID, FieldValue]:
        _validate_entity_type(entity_type)
        _require(actor_user, ENTITY_READ_PERMISSIONS[entity_type])
        ctx = _tenant_context(actor_user)
        _get_in_tenant(session, ENTITY_REPOSITORIES[entity_type], entity_id, ctx, "record not found")

        key = custom_field_values_key(ctx.client_id, entity_type, entity_id)
        return dict(query_cache.get_or_load(key, lambda: self._load_values(session, entity_type, entity_id, ctx)))

    def set_value(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        field_id: uuid.UUID,
        value: Any,
        actor_user: ActorUser,
    ) -> FieldValueRead:
        _validate_entity_type(entity_type)
        _require(actor_user, ENTITY_WRITE_PERMISSIONS[entity_type])
        ctx = _tenant_context(actor_user)
        _get_in_tenant(session, ENTITY_REPOSITORIES[entity_type], entity_id, ctx, "record not found")
        definition: CRMFieldDefinition = _get_in_tenant(
            session, field_definition_repository, field_id, ctx, "custom field not found"
        )
        if definition.entity_type != entity_type:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="custom field not found")

        with tracer.start_as_current_span("crm.custom_field_values.set_value") as span:
            span.set_attribute("entity_type", entity_type)
            try:
                typed = self._write_value(session, definition, entity_type, entity_id, value)
                session.commit()
            except HTTPException:
                session.rollback()
                raise

        self._after_write(actor_user, entity_type, entity_id, {field_id: typed})
        return FieldValueRead(entity_type=entity_type, entity_id=entity_id, field_id=field_id, value=typed)

    def set_values(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        values: dict[uuid.UUID, Any],
        actor_user: ActorUser,
    ) -> dict[uuid.UUID, FieldValue]:
        """Write several fields of one record in a single transaction.

        Fails with 422 when a required field is left without a value afterwards;
        nothing is written in that case.
        """

        _validate_entity_type(entity_type)
        _require(actor_user, ENTITY_WRITE_PERMISSIONS[entity_type])
        ctx = _tenant_context(actor_user)
        _get_in_tenant(session, ENTITY_REPOSITORIES[entity_type], entity_id, ctx, "record not found")
        definitions = {row.id: row for row in field_definition_repository.list_for_entity(session, entity_type, ctx)}

        unknown = [str(key) for key in values if key not in definitions]
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown custom fields: {', '.join(sorted(unknown))}",
            )

        written: dict[uuid.UUID, FieldValue | None] = {}
        with tracer.start_as_current_span("crm.custom_field_values.set_values") as span:
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("field_count", len(values))
            try:
                for field_id, raw in values.items():
                    written[field_id] = self._write_value(session, definitions[field_id], entity_type, entity_id, raw)
                self._enforce_required_values(session, ctx, entity_type, entity_id, definitions)
                session.commit()
            except HTTPException:
                session.rollback()
                raise

        if written:
            self._after_write(actor_user, entity_type, entity_id, written)
        return self._load_values(session, entity_type, entity_id, ctx)

    def _write_value(
        self,
        session: Session,
        definition: CRMFieldDefinition,
        entity_type: str,
        entity_id: uuid.UUID,
        raw: Any,
    ) -> FieldValue | None:
        if raw is None:
            field_value_repository.clear(
                session,
                client_id=definition.client_id,
                entity_type=entity_type,
                entity_id=entity_id,
                field_id=definition.id,
            )
            return None

        typed = self._validate_custom_value(definition, raw)
        if definition.is_unique:
            held = field_value_repository.values_held_by_others(
                session,
                client_id=definition.client_id,
                field_id=definition.id,
                entity_id=entity_id,
            )
            if typed.value in held:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"{definition.name} value is already used by another record",
                )

        field_value_repository.upsert(
            session,
            client_id=definition.client_id,
            entity_type=entity_type,
            entity_id=entity_id,
            field_id=definition.id,
            value_kind=typed.kind,
            value=typed.value,
        )
        return typed

    def _after_write(
        self,
        actor_user: ActorUser,
        entity_type: str,
        entity_id: uuid.UUID,
        written: dict[uuid.UUID, FieldValue | None],
    ) -> None:
        for typed in written.values():
            observe_field_value_write(entity_type, "clear" if typed is None else "upsert")
        audit.record(
            actor_user.user_id,
            str(actor_user.client_id),
            entity_type,
            str(entity_id),
            "custom_fields.update",
            None,
            {str(key): (value.model_dump() if value is not None else None) for key, value in written.items()},
        )
        events.publish(
            events.build_envelope(
                "crm.custom_field_values.updated",
                actor_user.client_id,
                {
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "field_ids": [str(key) for key in written],
                },
            )
        )

    def _load_values(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        ctx: AuthContext,
    ) -> dict[uuid.UUID, FieldValue]:
        output: dict[uuid.UUID, FieldValue] = {}
        for row in field_value_repository.list_for_entity(session, entity_type, entity_id, ctx):
            # Ordered by updated_at, so a repeated field_id keeps its latest value.
            output[row.field_id] = self._deserialize_value(row)
        return output

    def _enforce_required_values(
        self,
        session: Session,
        ctx: AuthContext,
        entity_type: str,
        entity_id: uuid.UUID,
        definitions: dict[uuid.UUID, CRMFieldDefinition],
    ) -> None:
        required = {key: definition for key, definition in definitions.items() if definition.is_required}
        if not required:
            return

        present = set(
            session.scalars(
                select(CRMFieldValue.field_id).where(
                    CRMFieldValue.client_id == uuid.UUID(str(ctx.client_id)),
                    CRMFieldValue.entity_type == entity_type,
                    CRMFieldValue.entity_id == entity_id,
                )
            ).all()
        )
        missing = [definition.name for key, definition in required.items() if key not in present]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"missing required custom fields: {', '.join(sorted(missing))}",
            )

    def _validate_custom_value(self, definition: CRMFieldDefinition, value: Any) -> FieldValue:
        field_type = definition.field_type
        if field_type in {"text", "textarea"}:
            if not isinstance(value, str):
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{definition.name} must be text")
            return TextValue(value=value)

        if field_type == "number":
            if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{definition.name} must be number")
            try:
                number = float(value)
            except OverflowError:
                number = math.inf
            if not math.isfinite(number):
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"{definition.name} must be a finite number",
                )
            return NumberValue(value=number)

        if field_type == "boolean":
            if not isinstance(value, bool):
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{definition.name} must be boolean")
            return BooleanValue(value=value)

        if field_type == "select":
            if not isinstance(value, str):
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{definition.name} must be text")
            allowed = definition.options or []
            if value not in allowed:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"{definition.name} must be one of: {', '.join(allowed)}",
                )
            return SelectValue(value=value)

        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="unsupported custom field type")

    def _deserialize_value(self, row: CRMFieldValue) -> FieldValue:
        return field_value_adapter.validate_python({"kind": row.value_kind, "value": row.value})


class FormService:
    def __init__(self, definitions: FieldDefinitionService, values: FieldValueService) -> None:
        self.definitions = definitions
        self.values = values

    def render_form(self, session: Session, entity_type: str, entity_id: uuid.UUID, actor_user: ActorUser) -> FormRead:
        definitions = self.definitions.list_definitions(session, entity_type, actor_user)
        current = self.values.get_values(session, entity_type, entity_id, actor_user)
        return FormRead(entity_type=entity_type, entity_id=entity_id, controls=build_form(definitions, current))

    def submit_form(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        submission: dict[uuid.UUID, Any],
        actor_user: ActorUser,
    ) -> FormRead:
        definitions = {item.id: item for item in self.definitions.list_definitions(session, entity_type, actor_user)}
        current = self.values.get_values(session, entity_type, entity_id, actor_user)

        errors: dict[str, str] = {}
        coerced: dict[uuid.UUID, Any] = {}
        for field_id, raw in submission.items():
            definition = definitions.get(field_id)
            if definition is None:
                errors[str(field_id)] = "unknown custom field"
                continue
            try:
                coerced[field_id] = coerce_submission(definition, raw)
            except FieldCoercionError as exc:
                errors[str(exc.field_id)] = exc.message
            except UnsupportedFieldTypeError as exc:
                errors[str(field_id)] = str(exc)

        for field_id, definition in definitions.items():
            if not definition.is_required or str(field_id) in errors:
                continue
            value = coerced[field_id] if field_id in coerced else current.get(field_id)
            if value is None:
                errors[str(field_id)] = f"{definition.name} is required"

        if errors:
            raise FormValidationError(errors)

        self.values.set_values(session, entity_type, entity_id, coerced, actor_user)
        return self.render_form(session, entity_type, entity_id, actor_user)


class EntityRelationshipService:
    def list_relationships(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        actor_user: ActorUser,
    ) -> list[RelationshipRead]:
        _require(actor_user, "read_deals")
        ctx = _tenant_context(actor_user)
        _get_in_tenant(session, opportunity_repository, opportunity_id, ctx, "opportunity not found")

        key = opportunity_relationships_key(ctx.client_id, opportunity_id)
        return list(query_cache.get_or_load(key, lambda: self._load(session, opportunity_id, ctx)))

    def add_relationship(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        dto: RelationshipCreate,
        actor_user: ActorUser,
    ) -> RelationshipRead:
        _require(actor_user, "write_deals")
        ctx = _tenant_context(actor_user)
        _get_in_tenant(session, opportunity_repository, opportunity_id, ctx, "opportunity not found")
        entity = _get_in_tenant(session, ENTITY_REPOSITORIES[dto.entity_type], dto.entity_id, ctx, "record not found")

        if get_settings().relationship_reject_duplicates:
            existing = relationship_repository.find_link(session, opportunity_id, dto.entity_type, dto.entity_id, ctx)
            if existing is not None:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="relationship already exists")

        link = CRMEntityRelationship(
            client_id=actor_user.client_id,
            opportunity_id=opportunity_id,
            entity_type=dto.entity_type,
            entity_id=dto.entity_id,
        )
        session.add(link)
        session.commit()
        session.refresh(link)

        read_model = RelationshipRead(
            id=link.id,
            opportunity_id=link.opportunity_id,
            entity_type=link.entity_type,
            entity_id=link.entity_id,
            entity_name=entity.name,
            created_at=link.created_at,
        )
        audit.record(
            actor_user.user_id,
            str(actor_user.client_id),
            "relationship",
            str(link.id),
            "create",
            None,
            read_model.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "crm.relationship.created",
                actor_user.client_id,
                {
                    "relationship_id": str(link.id),
                    "opportunity_id": str(opportunity_id),
                    "entity_type": dto.entity_type,
                    "entity_id": str(dto.entity_id),
                },
            )
        )
        return read_model

    def remove_relationship(self, session: Session, relationship_id: uuid.UUID, actor_user: ActorUser) -> None:
        _require(actor_user, "write_deals")
        ctx = _tenant_context(actor_user)
        link: CRMEntityRelationship = _get_for_write(
            session, relationship_repository, relationship_id, ctx, "relationship not found", action="delete"
        )
        client_id = link.client_id
        opportunity_id = link.opportunity_id
        session.delete(link)
        session.commit()

        audit.record(actor_user.user_id, str(client_id), "relationship", str(relationship_id), "delete", None, None)
        events.publish(
            events.build_envelope(
                "crm.relationship.deleted",
                client_id,
                {"relationship_id": str(relationship_id), "opportunity_id": str(opportunity_id)},
            )
        )

    def _load(self, session: Session, opportunity_id: uuid.UUID, ctx: AuthContext) -> list[RelationshipRead]:
        links = relationship_repository.list_for_opportunity(session, opportunity_id, ctx)

        wanted: dict[str, set[uuid.UUID]] = {}
        for link in links:
            wanted.setdefault(link.entity_type, set()).add(link.entity_id)
        names: dict[tuple[str, uuid.UUID], str] = {}
        for entity_type, ids in wanted.items():
            repository = ENTITY_REPOSITORIES[entity_type]
            rows = session.scalars(repository.scoped_select(ctx).where(repository.model.id.in_(ids))).all()
            for row in rows:
                names[(entity_type, row.id)] = row.name

        return [
            RelationshipRead(
                id=link.id,
                opportunity_id=link.opportunity_id,
                entity_type=link.entity_type,
                entity_id=link.entity_id,
                entity_name=names.get((link.entity_type, link.entity_id)),
                created_at=link.created_at,
            )
            for link in links
        ]


class RecordService:
    """Companies, people and partners: the records custom fields attach to."""

    def list_records(self, session: Session, entity_type: str, actor_user: ActorUser) -> list[RecordRead]:
        _validate_entity_type(entity_type)
        _require(actor_user, ENTITY_READ_PERMISSIONS[entity_type])
        repository = ENTITY_REPOSITORIES[entity_type]
        rows = _list_in_tenant(session, repository, _tenant_context(actor_user), repository.model.name.asc())
        return [RecordRead.model_validate(row) for row in rows]

    def get_record(self, session: Session, entity_type: str, record_id: uuid.UUID, actor_user: ActorUser) -> RecordRead:
        _validate_entity_type(entity_type)
        _require(actor_user, ENTITY_READ_PERMISSIONS[entity_type])
        row = _get_in_tenant(
            session, ENTITY_REPOSITORIES[entity_type], record_id, _tenant_context(actor_user), "record not found"
        )
        return RecordRead.model_validate(row)

    def create_record(self, session: Session, entity_type: str, dto: RecordCreate, actor_user: ActorUser) -> RecordRead:
        _validate_entity_type(entity_type)
        _require(actor_user, ENTITY_WRITE_PERMISSIONS[entity_type])
        if actor_user.client_id is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tenant resolved for records")

        repository = ENTITY_REPOSITORIES[entity_type]
        record = repository.model(
            client_id=actor_user.client_id,
            name=dto.name.strip(),
            email=dto.email,
            phone=dto.phone,
        )
        session.add(record)
        session.commit()
        session.refresh(record)

        read_model = RecordRead.model_validate(record)
        audit.record(
            actor_user.user_id,
            str(actor_user.client_id),
            entity_type,
            str(record.id),
            "create",
            None,
            read_model.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "crm.record.created",
                actor_user.client_id,
                {"entity_type": entity_type, "entity_id": str(record.id)},
            )
        )
        return read_model

    def delete_record(self, session: Session, entity_type: str, record_id: uuid.UUID, actor_user: ActorUser) -> None:
        """Delete a record with its custom field values and the relationships pointing at it."""

        _validate_entity_type(entity_type)
        _require(actor_user, ENTITY_WRITE_PERMISSIONS[entity_type])
        record = _get_for_write(
            session,
            ENTITY_REPOSITORIES[entity_type],
            record_id,
            _tenant_context(actor_user),
            "record not found",
            action="delete",
        )
        client_id = record.client_id
        before = RecordRead.model_validate(record).model_dump(mode="json")

        session.execute(
            delete(CRMFieldValue).where(
                CRMFieldValue.client_id == client_id,
                CRMFieldValue.entity_type == entity_type,
                CRMFieldValue.entity_id == record_id,
            )
        )
        session.execute(
            delete(CRMEntityRelationship).where(
                CRMEntityRelationship.client_id == client_id,
                CRMEntityRelationship.entity_type == entity_type,
                CRMEntityRelationship.entity_id == record_id,
            )
        )
        session.delete(record)
        session.commit()

        audit.record(actor_user.user_id, str(client_id), entity_type, str(record_id), "delete", before, None)
        events.publish(
            events.build_envelope(
                "crm.record.deleted",
                client_id,
                {"entity_type": entity_type, "entity_id": str(record_id)},
            )
        )
        logger.info(
            "crm_record_deleted",
            extra={"client_id": str(client_id), "entity_type": entity_type, "entity_id": str(record_id)},
        )


class OpportunityService:
    def list_opportunities(self, session: Session, actor_user: ActorUser) -> list[OpportunityRead]:
        _require(actor_user, "read_deals")
        rows = _list_in_tenant(
            session,
            opportunity_repository,
            _tenant_context(actor_user),
            CRMOpportunity.created_at.desc(),
        )
        return [OpportunityRead.model_validate(row) for row in rows]

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID, actor_user: ActorUser) -> OpportunityRead:
        _require(actor_user, "read_deals")
        row = _get_in_tenant(
            session, opportunity_repository, opportunity_id, _tenant_context(actor_user), "opportunity not found"
        )
        return OpportunityRead.model_validate(row)

    def create_opportunity(self, session: Session, dto: OpportunityCreate, actor_user: ActorUser) -> OpportunityRead:
        _require(actor_user, "write_deals")
        if actor_user.client_id is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tenant resolved for opportunities")

        opportunity = CRMOpportunity(
            client_id=actor_user.client_id,
            title=dto.title.strip(),
            amount=dto.amount,
            stage=dto.stage,
        )
        session.add(opportunity)
        session.commit()
        session.refresh(opportunity)

        read_model = OpportunityRead.model_validate(opportunity)
        audit.record(
            actor_user.user_id,
            str(actor_user.client_id),
            "opportunity",
            str(opportunity.id),
            "create",
            None,
            read_model.model_dump(mode="json"),
        )
        events.publish(
            events.build_envelope(
                "crm.record.created",
                actor_user.client_id,
                {"entity_type": "opportunities", "entity_id": str(opportunity.id)},
            )
        )
        return read_model

    def delete_opportunity(self, session: Session, opportunity_id: uuid.UUID, actor_user: ActorUser) -> None:
        _require(actor_user, "write_deals")
        opportunity = _get_for_write(
            session,
            opportunity_repository,
            opportunity_id,
            _tenant_context(actor_user),
            "opportunity not found",
            action="delete",
        )
        client_id = opportunity.client_id
        session.execute(
            delete(CRMEntityRelationship).where(
                CRMEntityRelationship.client_id == client_id,
                CRMEntityRelationship.opportunity_id == opportunity_id,
            )
        )
        session.delete(opportunity)
        session.commit()

        audit.record(actor_user.user_id, str(client_id), "opportunity", str(opportunity_id), "delete", None, None)
        events.publish(
            events.build_envelope(
                "crm.record.deleted",
                client_id,
                {"entity_type": "opportunities", "entity_id": str(opportunity_id)},
            )
        )


field_definition_service = FieldDefinitionService()
field_value_service = FieldValueService()
form_service = FormService(field_definition_service, field_value_service)
relationship_service = EntityRelationshipService()
record_service = RecordService()
opportunity_service = OpportunityService()
