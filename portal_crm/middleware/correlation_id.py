from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from portal_crm.context import reset_correlation_id, set_correlation_id


PORTALS = {"crm", "admin", "client"}
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _incoming_correlation_id(request: Request) -> str:
    for header in ("x-correlation-id", "x-request-id"):
        candidate = request.headers.get(header, "").strip()
        if candidate and _VALID_ID.match(candidate):
            return candidate
    return str(uuid.uuid4())


def _portal(request: Request) -> str:
    portal = request.headers.get("x-portal", "").strip().lower()
    return portal if portal in PORTALS else "crm"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation id and the portal it came from.

    The id is taken from ``X-Correlation-Id`` (or ``X-Request-Id``) when it is a
    short printable token, otherwise a new uuid is generated. It is echoed on
    both headers of the response.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request)
        request.state.correlation_id = correlation_id
        request.state.portal = _portal(request)
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            span.set_attribute("portal", request.state.portal)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        response.headers["x-request-id"] = correlation_id
        return response
