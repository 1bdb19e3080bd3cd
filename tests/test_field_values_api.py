from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date, timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_crm import audit, events
from portal_crm.core.config import get_settings
from portal_crm.core.database import Base, get_db
from portal_crm.crm.cache import query_cache
from portal_crm.crm.models import CRMFieldValue
from portal_crm.main import app
from portal_crm.middleware.rate_limit import reset_rate_limiter
from portal_crm.tenancy.api import get_current_user
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    query_cache.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
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


@pytest.fixture()
def tenants(db_session: Session) -> dict[str, uuid.UUID]:
    return {"a": _seed_client(db_session, "Alpha"), "b": _seed_client(db_session, "Beta")}


@pytest.fixture()
def client(
    db_session: Session,
    tenants: dict[str, uuid.UUID],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    state = {"current": "admin_a"}
    actors = {
        "admin_a": ("admin-a", tenants["a"], "administrator"),
        "partner_a": ("partner-a", tenants["a"], "partner"),
        "admin_b": ("admin-b", tenants["b"], "administrator"),
    }

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        user_id, client_id, role = actors[state["current"]]
        return ActorUser(
            user_id=user_id,
            client_id=client_id,
            permissions=permissions_for_role(role),
            role=role,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(actor: str) -> None:
        state["current"] = actor

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_definition(test_client: TestClient, entity_type: str, **body: object) -> dict:
    response = test_client.post(f"/api/crm/custom-fields/{entity_type}", json=body)
    assert response.status_code == 201
    return response.json()


def _create_record(test_client: TestClient, entity_type: str, name: str) -> dict:
    response = test_client.post(f"/api/crm/records/{entity_type}", json={"name": name})
    assert response.status_code == 201
    return response.json()


def _value_url(entity_type: str, entity_id: str, field_id: str | None = None) -> str:
    base = f"/api/crm/custom-fields/{entity_type}/records/{entity_id}/values"
    return base if field_id is None else f"{base}/{field_id}"


def test_set_value_validates_declared_type(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    budget = _create_definition(test_client, "companies", name="Budget", field_type="number")
    vip = _create_definition(test_client, "companies", name="VIP", field_type="boolean")

    as_bool = test_client.put(_value_url("companies", company["id"], budget["id"]), json={"value": True})
    assert as_bool.status_code == 422
    assert as_bool.json()["code"] == "crm_custom_field_value_set_failed"
    assert as_bool.json()["message"] == "Budget must be number"

    as_text = test_client.put(_value_url("companies", company["id"], budget["id"]), json={"value": "1200"})
    assert as_text.status_code == 422

    as_number = test_client.put(_value_url("companies", company["id"], vip["id"]), json={"value": 1})
    assert as_number.status_code == 422

    stored = test_client.put(_value_url("companies", company["id"], budget["id"]), json={"value": 1200})
    assert stored.status_code == 200
    assert stored.json()["value"] == {"kind": "number", "value": 1200.0}

    flag = test_client.put(_value_url("companies", company["id"], vip["id"]), json={"value": False})
    assert flag.status_code == 200
    assert flag.json()["value"] == {"kind": "boolean", "value": False}


def test_select_value_must_be_an_option(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    tier = _create_definition(test_client, "companies", name="Tier", field_type="select", options=["gold", "silver"])

    rejected = test_client.put(_value_url("companies", company["id"], tier["id"]), json={"value": "platinum"})
    assert rejected.status_code == 422
    assert rejected.json()["message"] == "Tier must be one of: gold, silver"

    accepted = test_client.put(_value_url("companies", company["id"], tier["id"]), json={"value": "silver"})
    assert accepted.status_code == 200
    assert accepted.json()["value"] == {"kind": "select", "value": "silver"}


def test_repeated_write_keeps_single_row(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    notes = _create_definition(test_client, "companies", name="Notes", field_type="text")

    for value in ["first", "first", "second"]:
        response = test_client.put(_value_url("companies", company["id"], notes["id"]), json={"value": value})
        assert response.status_code == 200

    assert db_session.scalar(select(func.count()).select_from(CRMFieldValue)) == 1
    values = test_client.get(_value_url("companies", company["id"]))
    assert values.status_code == 200
    assert values.json()["values"] == {notes["id"]: {"kind": "text", "value": "second"}}


def test_null_value_clears_field(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    notes = _create_definition(test_client, "companies", name="Notes", field_type="text")
    test_client.put(_value_url("companies", company["id"], notes["id"]), json={"value": "keep me"})

    cleared = test_client.put(_value_url("companies", company["id"], notes["id"]), json={"value": None})
    assert cleared.status_code == 200
    assert cleared.json()["value"] is None

    assert test_client.get(_value_url("companies", company["id"])).json()["values"] == {}
    assert db_session.scalar(select(func.count()).select_from(CRMFieldValue)) == 0


def test_unique_field_rejects_value_held_by_another_record(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    first = _create_record(test_client, "companies", "First")
    second = _create_record(test_client, "companies", "Second")
    tax = _create_definition(test_client, "companies", name="Tax Number", field_type="text", is_unique=True)

    assert test_client.put(_value_url("companies", first["id"], tax["id"]), json={"value": "X-1"}).status_code == 200

    conflict = test_client.put(_value_url("companies", second["id"], tax["id"]), json={"value": "X-1"})
    assert conflict.status_code == 409
    assert conflict.json()["message"] == "Tax Number value is already used by another record"

    rewrite_own = test_client.put(_value_url("companies", first["id"], tax["id"]), json={"value": "X-1"})
    assert rewrite_own.status_code == 200

    different = test_client.put(_value_url("companies", second["id"], tax["id"]), json={"value": "X-2"})
    assert different.status_code == 200


def test_set_values_requires_required_fields_and_writes_nothing_on_failure(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    budget = _create_definition(test_client, "companies", name="Budget", field_type="number", is_required=True)
    notes = _create_definition(test_client, "companies", name="Notes", field_type="text")

    missing = test_client.put(_value_url("companies", company["id"]), json={"values": {notes["id"]: "hello"}})
    assert missing.status_code == 422
    assert missing.json()["code"] == "crm_custom_field_values_set_failed"
    assert missing.json()["message"] == "missing required custom fields: Budget"
    assert db_session.scalar(select(func.count()).select_from(CRMFieldValue)) == 0

    complete = test_client.put(
        _value_url("companies", company["id"]),
        json={"values": {notes["id"]: "hello", budget["id"]: 300}},
    )
    assert complete.status_code == 200
    assert complete.json()["values"] == {
        notes["id"]: {"kind": "text", "value": "hello"},
        budget["id"]: {"kind": "number", "value": 300.0},
    }

    clear_required = test_client.put(_value_url("companies", company["id"]), json={"values": {budget["id"]: None}})
    assert clear_required.status_code == 422
    assert test_client.get(_value_url("companies", company["id"])).json()["values"][budget["id"]]["value"] == 300.0


def test_set_values_rejects_unknown_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    _create_definition(test_client, "companies", name="Notes", field_type="text")

    response = test_client.put(_value_url("companies", company["id"]), json={"values": {str(uuid.uuid4()): "x"}})
    assert response.status_code == 422
    assert response.json()["message"].startswith("unknown custom fields:")


def test_field_of_other_entity_type_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    people_field = _create_definition(test_client, "people", name="Nickname", field_type="text")

    response = test_client.put(_value_url("companies", company["id"], people_field["id"]), json={"value": "Ace"})
    assert response.status_code == 404
    assert response.json()["message"] == "custom field not found"


def test_values_for_missing_record_not_found(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    response = test_client.get(_value_url("companies", str(uuid.uuid4())))
    assert response.status_code == 404
    assert response.json()["code"] == "crm_custom_field_values_get_failed"


def test_values_are_isolated_between_tenants(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    company = _create_record(test_client, "companies", "Acme")
    notes = _create_definition(test_client, "companies", name="Notes", field_type="text")
    test_client.put(_value_url("companies", company["id"], notes["id"]), json={"value": "private"})

    set_actor("admin_b")
    read = test_client.get(_value_url("companies", company["id"]))
    assert read.status_code == 404

    write = test_client.put(_value_url("companies", company["id"], notes["id"]), json={"value": "mine now"})
    assert write.status_code == 404

    set_actor("admin_a")
    values = test_client.get(_value_url("companies", company["id"])).json()["values"]
    assert values[notes["id"]]["value"] == "private"


def test_partner_reads_but_cannot_write_company_values(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    company = _create_record(test_client, "companies", "Acme")
    notes = _create_definition(test_client, "companies", name="Notes", field_type="text")

    set_actor("partner_a")
    assert test_client.get(_value_url("companies", company["id"])).status_code == 200

    denied = test_client.put(_value_url("companies", company["id"], notes["id"]), json={"value": "x"})
    assert denied.status_code == 403
    assert denied.json()["message"] == "Missing permission: write_companies"


def test_partner_values_need_manage_partners(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    partner = _create_record(test_client, "partners", "Reseller")
    region = _create_definition(test_client, "partners", name="Region", field_type="text")

    response = test_client.put(_value_url("partners", partner["id"], region["id"]), json={"value": "EMEA"})
    assert response.status_code == 200
    assert response.json()["entity_type"] == "partners"


def test_value_write_publishes_event_and_audit(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    notes = _create_definition(test_client, "companies", name="Notes", field_type="text")

    response = test_client.put(
        _value_url("companies", company["id"], notes["id"]),
        json={"value": "audited"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 200

    updates = [event for event in events.published_events if event["event_type"] == "crm.custom_field_values.updated"]
    assert len(updates) == 1
    assert updates[0]["payload"] == {
        "entity_type": "companies",
        "entity_id": company["id"],
        "field_ids": [notes["id"]],
    }
    assert updates[0]["correlation_id"] == "abc-123"

    value_audits = [entry for entry in audit.audit_entries if entry["action"] == "custom_fields.update"]
    assert value_audits
    assert value_audits[-1]["after"] == {notes["id"]: {"kind": "text", "value": "audited"}}
    assert value_audits[-1]["correlation_id"] == "abc-123"


def test_failed_write_publishes_nothing(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    budget = _create_definition(test_client, "companies", name="Budget", field_type="number")
    events.published_events.clear()

    response = test_client.put(_value_url("companies", company["id"], budget["id"]), json={"value": "lots"})
    assert response.status_code == 422
    assert events.published_events == []


def test_number_too_large_for_float_rejected(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    company = _create_record(test_client, "companies", "Acme")
    budget = _create_definition(test_client, "companies", name="Budget", field_type="number")

    response = test_client.put(_value_url("companies", company["id"], budget["id"]), json={"value": 10**400})
    assert response.status_code == 422
    assert response.json()["code"] == "crm_custom_field_value_set_failed"
    assert response.json()["message"] == "Budget must be a finite number"
    assert db_session.scalar(select(func.count()).select_from(CRMFieldValue)) == 0
