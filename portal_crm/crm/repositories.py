from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from portal_crm.crm.models import (
    CRMCompany,
    CRMEntityRelationship,
    CRMFieldDefinition,
    CRMFieldValue,
    CRMOpportunity,
    CRMPartner,
    CRMPerson,
)
from portal_crm.platform.security.context import AuthContext
from portal_crm.platform.security.repository import BaseRepository


class CompanyRepository(BaseRepository):
    resource = "crm.company"
    model = CRMCompany


class PersonRepository(BaseRepository):
    resource = "crm.person"
    model = CRMPerson


class PartnerRepository(BaseRepository):
    resource = "crm.partner"
    model = CRMPartner


class OpportunityRepository(BaseRepository):
    resource = "crm.opportunity"
    model = CRMOpportunity


class FieldDefinitionRepository(BaseRepository):
    resource = "crm.field_definition"
    model = CRMFieldDefinition

    def list_for_entity(self, session: Session, entity_type: str, ctx: AuthContext) -> list[CRMFieldDefinition]:
        stmt = (
            self.scoped_select(ctx)
            .where(CRMFieldDefinition.entity_type == entity_type)
            .order_by(CRMFieldDefinition.order_index.asc(), CRMFieldDefinition.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def next_order_index(self, session: Session, entity_type: str, ctx: AuthContext) -> int:
        # Aggregate selects carry no mapped entity, so the tenant filter is applied explicitly.
        stmt = select(func.max(CRMFieldDefinition.order_index)).where(
            CRMFieldDefinition.client_id == uuid.UUID(str(ctx.client_id)),
            CRMFieldDefinition.entity_type == entity_type,
        )
        current = session.scalar(stmt)
        return 0 if current is None else int(current) + 1


class FieldValueRepository(BaseRepository):
    resource = "crm.field_value"
    model = CRMFieldValue

    def list_for_entity(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        ctx: AuthContext,
    ) -> list[CRMFieldValue]:
        stmt = (
            self.scoped_select(ctx)
            .where(CRMFieldValue.entity_type == entity_type, CRMFieldValue.entity_id == entity_id)
            .order_by(CRMFieldValue.updated_at.asc())
        )
        return list(session.scalars(stmt).all())

    def upsert(
        self,
        session: Session,
        *,
        client_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        field_id: uuid.UUID,
        value_kind: str,
        value: Any,
    ) -> None:
        """Insert or update the single row keyed by (client, entity, field) in one statement."""

        dialect_insert = postgresql.insert if session.get_bind().dialect.name == "postgresql" else sqlite.insert
        now = datetime.now(timezone.utc)
        stmt = dialect_insert(CRMFieldValue).values(
            id=uuid.uuid4(),
            client_id=client_id,
            entity_type=entity_type,
            entity_id=entity_id,
            field_id=field_id,
            value_kind=value_kind,
            value=value,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[
                CRMFieldValue.client_id,
                CRMFieldValue.entity_type,
                CRMFieldValue.entity_id,
                CRMFieldValue.field_id,
            ],
            set_={
                "value_kind": stmt.excluded.value_kind,
                "value": stmt.excluded.value,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)

    def clear(
        self,
        session: Session,
        *,
        client_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        field_id: uuid.UUID,
    ) -> int:
        result = session.execute(
            delete(CRMFieldValue).where(
                CRMFieldValue.client_id == client_id,
                CRMFieldValue.entity_type == entity_type,
                CRMFieldValue.entity_id == entity_id,
                CRMFieldValue.field_id == field_id,
            )
        )
        return int(result.rowcount or 0)

    def values_held_by_others(
        self,
        session: Session,
        *,
        client_id: uuid.UUID,
        field_id: uuid.UUID,
        entity_id: uuid.UUID,
    ) -> list[Any]:
        stmt = select(CRMFieldValue.value).where(
            CRMFieldValue.client_id == client_id,
            CRMFieldValue.field_id == field_id,
            CRMFieldValue.entity_id != entity_id,
        )
        return list(session.scalars(stmt).all())


class RelationshipRepository(BaseRepository):
    resource = "crm.entity_relationship"
    model = CRMEntityRelationship

    def list_for_opportunity(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        ctx: AuthContext,
    ) -> list[CRMEntityRelationship]:
        stmt = (
            self.scoped_select(ctx)
            .where(CRMEntityRelationship.opportunity_id == opportunity_id)
            .order_by(CRMEntityRelationship.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def find_link(
        self,
        session: Session,
        opportunity_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        ctx: AuthContext,
    ) -> CRMEntityRelationship | None:
        stmt = self.scoped_select(ctx).where(
            CRMEntityRelationship.opportunity_id == opportunity_id,
            CRMEntityRelationship.entity_type == entity_type,
            CRMEntityRelationship.entity_id == entity_id,
        )
        return session.scalars(stmt.limit(1)).first()


company_repository = CompanyRepository()
person_repository = PersonRepository()
partner_repository = PartnerRepository()
opportunity_repository = OpportunityRepository()
field_definition_repository = FieldDefinitionRepository()
field_value_repository = FieldValueRepository()
relationship_repository = RelationshipRepository()

ENTITY_REPOSITORIES: dict[str, BaseRepository] = {
    "companies": company_repository,
    "people": person_repository,
    "partners": partner_repository,
}
