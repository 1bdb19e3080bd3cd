from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from portal_crm import audit, events
from portal_crm.core.auth import issue_token
from portal_crm.core.config import get_settings
from portal_crm.core.database import Base, get_db
from portal_crm.crm.cache import query_cache
from portal_crm.main import app
from portal_crm.middleware.rate_limit import reset_rate_limiter
from portal_crm.tenancy.models import Client, Collaborator, License
from portal_crm.tenancy.permissions import permissions_for_role


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
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    query_cache.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    query_cache.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def closer(db_session: Session) -> Collaborator:
    client = Client(name="Alpha", company_name="Alpha Ltd", email="alpha@example.com", tax_id="TAX-A")
    db_session.add(client)
    db_session.flush()
    license_row = License(
        client_id=client.id,
        type="basic",
        start_date=date.today(),
        expiration_date=date.today() + timedelta(days=30),
        user_limit=3,
    )
    db_session.add(license_row)
    db_session.flush()
    collaborator = Collaborator(
        client_id=client.id,
        license_id=license_row.id,
        auth_user_id="auth-carol",
        name="Carol",
        email="carol@example.com",
        role="closer",
        permissions=sorted(permissions_for_role("closer")),
    )
    db_session.add(collaborator)
    db_session.commit()
    return collaborator


def _bearer(subject: str, roles: list[str] | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(subject, roles)}"}


def test_missing_token_is_not_authenticated(client: TestClient) -> None:
    response = client.get("/me", headers={"X-Correlation-Id": "auth-1"})
    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "not_authenticated"
    assert body["correlation_id"] == "auth-1"


def test_invalid_token_is_not_authenticated(client: TestClient) -> None:
    response = client.get("/api/crm/custom-fields/companies", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["code"] == "not_authenticated"


def test_unknown_user_is_tenant_not_resolved(client: TestClient) -> None:
    response = client.get("/api/crm/custom-fields/companies", headers=_bearer("auth-stranger"))
    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "tenant_not_resolved"
    assert body["message"] == "collaborator not found for authenticated user"


def test_collaborator_resolves_to_tenant(client: TestClient, closer: Collaborator) -> None:
    me = client.get("/me", headers=_bearer("auth-carol"))
    assert me.status_code == 200
    body = me.json()
    assert body["user_id"] == "auth-carol"
    assert body["client_id"] == str(closer.client_id)
    assert body["collaborator_id"] == str(closer.id)
    assert body["role"] == "closer"
    assert "read_deals" in body["permissions"]
    assert "manage_custom_fields" not in body["permissions"]
    assert body["is_platform_admin"] is False

    listed = client.get("/api/crm/custom-fields/companies", headers=_bearer("auth-carol"))
    assert listed.status_code == 200
    assert listed.json() == []

    denied = client.post(
        "/api/crm/custom-fields/companies",
        json={"name": "Budget", "field_type": "number"},
        headers=_bearer("auth-carol"),
    )
    assert denied.status_code == 403
    assert denied.json()["code"] == "crm_custom_fields_create_failed"


def test_platform_admin_without_collaborator(client: TestClient) -> None:
    headers = _bearer("auth-root", ["platform.admin"])
    me = client.get("/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["is_platform_admin"] is True
    assert me.json()["client_id"] is None

    clients = client.get("/api/tenancy/clients", headers=headers)
    assert clients.status_code == 200

    crm = client.get("/api/crm/custom-fields/companies", headers=headers)
    assert crm.status_code == 403


def test_token_signed_with_other_secret_rejected(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    token = issue_token("auth-carol")
    monkeypatch.setenv("JWT_SECRET", "rotated-secret")
    get_settings.cache_clear()

    response = client.get("/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_accept_invite_needs_no_session(client: TestClient) -> None:
    headers = {"Authorization": f"Bearer {issue_token('auth-x')}"}
    response = client.post("/api/tenancy/invites/accept", json={"token": str(uuid.uuid4())}, headers=headers)
    assert response.status_code == 404
    assert response.json()["code"] == "tenancy_invite_accept_failed"


def test_accept_invite_rejects_anonymous_caller(client: TestClient) -> None:
    response = client.post("/api/tenancy/invites/accept", json={"token": str(uuid.uuid4())})
    assert response.status_code == 401
    assert response.json()["code"] == "not_authenticated"
