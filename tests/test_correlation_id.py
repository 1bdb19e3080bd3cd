from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_crm import audit, events
from portal_crm.core.config import get_settings
from portal_crm.core.database import Base, get_db
from portal_crm.crm.cache import query_cache
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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    query_cache.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    query_cache.clear()


@pytest.fixture()
def client_id(db_session: Session) -> uuid.UUID:
    client = Client(name="Alpha", company_name="Alpha Ltd", email="alpha@example.com", tax_id="TAX-A")
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
def client(db_session: Session, client_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            client_id=client_id,
            permissions=permissions_for_role("administrator"),
            role="administrator",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/companies/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/companies/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_correlation_id_flows_into_audit_and_events(client: TestClient) -> None:
    created = client.post(
        "/api/crm/custom-fields/companies",
        json={"name": "Budget", "field_type": "number"},
        headers={"X-Correlation-Id": "corr-777"},
    )
    assert created.status_code == 201

    field_audits = [entry for entry in audit.audit_entries if entry["entity_type"] == "custom_field"]
    assert field_audits
    assert field_audits[-1]["correlation_id"] == "corr-777"

    created_events = [event for event in events.published_events if event["event_type"] == "crm.custom_field.created"]
    assert created_events
    assert created_events[-1]["correlation_id"] == "corr-777"
    assert created_events[-1]["client_id"] == created.json()["client_id"]


def test_request_id_header_used_when_no_correlation_id(client: TestClient) -> None:
    response = client.get(f"/api/crm/records/companies/{uuid.uuid4()}", headers={"X-Request-Id": "req-42"})
    assert response.headers.get("x-correlation-id") == "req-42"
    assert response.json()["correlation_id"] == "req-42"


def test_malformed_correlation_id_replaced(client: TestClient) -> None:
    response = client.get(
        f"/api/crm/records/companies/{uuid.uuid4()}",
        headers={"X-Correlation-Id": "bad id with spaces"},
    )
    header_value = response.headers.get("x-correlation-id")
    assert header_value != "bad id with spaces"
    assert uuid.UUID(header_value)
