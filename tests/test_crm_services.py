from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_crm import audit, events
from portal_crm.core.database import Base
from portal_crm.crm.cache import custom_fields_key, query_cache
from portal_crm.crm.models import CRMCompany, CRMFieldDefinition, CRMFieldValue
from portal_crm.crm.repositories import field_definition_repository, field_value_repository
from portal_crm.crm.schemas import FieldDefinitionCreate, RecordCreate
from portal_crm.crm.service import FieldDefinitionService, FieldValueService, RecordService
from portal_crm.platform.security.context import AuthContext
from portal_crm.tenancy.models import Client, License
from portal_crm.tenancy.permissions import permissions_for_role
from portal_crm.tenancy.service import ActorUser


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    query_cache.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    query_cache.clear()


def _seed_client(db_session: Session, name: str) -> uuid.UUID:
    client = Client(name=name, company_name=f"{name} Ltd", email=f"{name.lower()}@example.com", tax_id=f"TAX-{name}")
    db_session.add(client)
    db_session.flush()
    db_session.add(
        License(
            client_id=client.id,
            type="basic",
            start_date=date.today(),
            expiration_date=date.today() + timedelta(days=30),
            user_limit=3,
        )
    )
    db_session.commit()
    return client.id


def _admin(client_id: uuid.UUID, *, is_platform_admin: bool = False) -> ActorUser:
    return ActorUser(
        user_id=f"admin-{client_id}",
        client_id=client_id,
        permissions=permissions_for_role("administrator"),
        role="administrator",
        is_platform_admin=is_platform_admin,
    )


def test_next_order_index_counts_only_own_tenant(db_session: Session) -> None:
    alpha = _seed_client(db_session, "Alpha")
    beta = _seed_client(db_session, "Beta")
    service = FieldDefinitionService()
    for name in ["One", "Two", "Three"]:
        service.create_definition(db_session, "companies", FieldDefinitionCreate(name=name, field_type="text"), _admin(beta))

    ctx = AuthContext(user_id="admin", client_id=str(alpha))
    assert field_definition_repository.next_order_index(db_session, "companies", ctx) == 0

    created = service.create_definition(
        db_session, "companies", FieldDefinitionCreate(name="One", field_type="text"), _admin(alpha)
    )
    assert created.order_index == 0


def test_upsert_writes_one_row_per_field(db_session: Session) -> None:
    alpha = _seed_client(db_session, "Alpha")
    company = CRMCompany(client_id=alpha, name="Acme")
    db_session.add(company)
    db_session.commit()
    definition = FieldDefinitionService().create_definition(
        db_session, "companies", FieldDefinitionCreate(name="Score", field_type="number"), _admin(alpha)
    )

    for value in [1.0, 2.0, 3.0]:
        field_value_repository.upsert(
            db_session,
            client_id=alpha,
            entity_type="companies",
            entity_id=company.id,
            field_id=definition.id,
            value_kind="number",
            value=value,
        )
    db_session.commit()

    rows = db_session.scalars(select(CRMFieldValue)).all()
    assert len(rows) == 1
    assert rows[0].value == 3.0

    cleared = field_value_repository.clear(
        db_session,
        client_id=alpha,
        entity_type="companies",
        entity_id=company.id,
        field_id=definition.id,
    )
    db_session.commit()
    assert cleared == 1
    assert db_session.scalar(select(func.count()).select_from(CRMFieldValue)) == 0


def test_definition_list_cached_until_invalidated(db_session: Session) -> None:
    alpha = _seed_client(db_session, "Alpha")
    actor = _admin(alpha)
    service = FieldDefinitionService()
    service.create_definition(db_session, "companies", FieldDefinitionCreate(name="Budget", field_type="number"), actor)

    assert [row.name for row in service.list_definitions(db_session, "companies", actor)] == ["Budget"]

    db_session.add(
        CRMFieldDefinition(client_id=alpha, entity_type="companies", name="Sneaky", field_type="text", order_index=1)
    )
    db_session.commit()
    assert [row.name for row in service.list_definitions(db_session, "companies", actor)] == ["Budget"]

    query_cache.invalidate(custom_fields_key(alpha, "companies"))
    assert [row.name for row in service.list_definitions(db_session, "companies", actor)] == ["Budget", "Sneaky"]


def test_platform_admin_gets_no_bypass_on_crm_rows(db_session: Session) -> None:
    alpha = _seed_client(db_session, "Alpha")
    beta = _seed_client(db_session, "Beta")
    foreign = RecordService().create_record(db_session, "companies", RecordCreate(name="Beta Corp"), _admin(beta))

    operator = _admin(alpha, is_platform_admin=True)
    with pytest.raises(HTTPException) as exc_info:
        FieldValueService().get_values(db_session, "companies", foreign.id, operator)
    assert exc_info.value.status_code == 404

    assert RecordService().list_records(db_session, "companies", operator) == []


def test_reorder_leaves_order_untouched_on_rejection(db_session: Session) -> None:
    alpha = _seed_client(db_session, "Alpha")
    actor = _admin(alpha)
    service = FieldDefinitionService()
    first = service.create_definition(db_session, "people", FieldDefinitionCreate(name="First", field_type="text"), actor)
    second = service.create_definition(db_session, "people", FieldDefinitionCreate(name="Second", field_type="text"), actor)
    events.published_events.clear()

    with pytest.raises(HTTPException) as exc_info:
        service.reorder(db_session, "people", [second.id, second.id], actor)
    assert exc_info.value.status_code == 422
    assert events.published_events == []

    ordered = service.reorder(db_session, "people", [second.id, first.id], actor)
    assert [(row.name, row.order_index) for row in ordered] == [("Second", 0), ("First", 1)]
    assert [event["event_type"] for event in events.published_events] == ["crm.custom_field.reordered"]


def test_reordered_fields_read_back_in_stable_order(db_session: Session) -> None:
    alpha = _seed_client(db_session, "Alpha")
    actor = _admin(alpha)
    service = FieldDefinitionService()
    created = [
        service.create_definition(db_session, "people", FieldDefinitionCreate(name=name, field_type="text"), actor)
        for name in ["A", "B", "C", "D"]
    ]
    service.reorder(db_session, "people", [row.id for row in reversed(created)], actor)

    for _ in range(5):
        query_cache.clear()
        listed = service.list_definitions(db_session, "people", actor)
        assert [row.name for row in listed] == ["D", "C", "B", "A"]
        assert [row.order_index for row in listed] == [0, 1, 2, 3]

    # Tie on order_index: the older definition comes first.
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    rows = {row.name: row for row in db_session.scalars(select(CRMFieldDefinition)).all()}
    rows["B"].order_index = 1
    rows["B"].created_at = base
    rows["C"].order_index = 1
    rows["C"].created_at = base + timedelta(seconds=1)
    db_session.commit()

    for _ in range(5):
        query_cache.clear()
        listed = service.list_definitions(db_session, "people", actor)
        assert [row.name for row in listed] == ["D", "B", "C", "A"]
