from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from portal_crm.context import get_correlation_id
from portal_crm.core.config import get_settings


logger = logging.getLogger("portal_crm.tenancy.invites")
tracer = trace.get_tracer("portal_crm.tenancy.invites")


class InviteDeliveryError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class InviteRequest:
    collaborator_id: str
    name: str
    email: str
    invite_url: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "collaboratorId": self.collaborator_id,
            "name": self.name,
            "email": self.email,
            "inviteUrl": self.invite_url,
        }


class InviteClient(Protocol):
    def send(self, request: InviteRequest) -> None: ...


class HttpInviteClient:
    """Posts invite requests to the hosted send-invite function."""

    def __init__(self, url: str, token: str | None = None, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.transport = transport

    def send(self, request: InviteRequest) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["x-correlation-id"] = correlation_id

        with tracer.start_as_current_span("invites.send") as span:
            span.set_attribute("collaborator_id", request.collaborator_id)
            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.post(self.url, headers=headers, json=request.to_payload())
            except httpx.HTTPError as exc:
                raise InviteDeliveryError(f"invite delivery failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 400:
                raise InviteDeliveryError(
                    f"invite function returned {response.status_code}",
                    status_code=response.status_code,
                )


class StubInviteClient:
    """Keeps sent invites in memory; used when no invite function is configured."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[InviteRequest] = []

    def send(self, request: InviteRequest) -> None:
        if self.fail:
            raise InviteDeliveryError("stub invite delivery failure")
        self.sent.append(request)
        logger.info("invite_stub_sent", extra={"collaborator_id": request.collaborator_id})


_invite_client: InviteClient | None = None


def set_invite_client(client: InviteClient | None) -> None:
    global _invite_client
    _invite_client = client


def get_invite_client() -> InviteClient:
    global _invite_client
    if _invite_client is not None:
        return _invite_client

    settings = get_settings()
    if settings.invite_function_url:
        return HttpInviteClient(
            settings.invite_function_url,
            token=settings.invite_function_token,
            timeout=settings.invite_timeout_seconds,
        )
    _invite_client = StubInviteClient()
    return _invite_client


def build_invite_url(token: str) -> str:
    base_url = get_settings().invite_base_url.rstrip("/")
    return f"{base_url}?token={token}"
