from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from portal_crm.api.errors import error_response
from portal_crm.core.auth import ANONYMOUS_SUBJECT, decode_token
from portal_crm.core.config import get_settings


CRM_PREFIX = "/api/crm"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class MutationRateLimiter:
    """Token buckets keyed by (caller, route group), refilled continuously over the window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}

    def take(self, subject: str, route_group: str, capacity: int, window_seconds: int) -> int:
        """Consume one token; return 0 when allowed, otherwise the seconds to wait."""

        if capacity <= 0:
            return window_seconds

        rate = capacity / float(window_seconds)
        now = self._clock()
        with self._lock:
            bucket = self._buckets.setdefault((subject, route_group), _Bucket(float(capacity), now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * rate)
            bucket.refilled_at = now
            if bucket.tokens < 1.0:
                return max(1, math.ceil((1.0 - bucket.tokens) / rate))
            bucket.tokens -= 1.0
            return 0

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = MutationRateLimiter()


def route_group(path: str) -> str:
    """``/api/crm/custom-fields/companies`` belongs to the ``custom-fields`` group."""

    parts = [part for part in path.split("/") if part]
    return parts[2] if len(parts) > 2 else "crm"


def _subject(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return ANONYMOUS_SUBJECT
    try:
        payload = decode_token(auth_header[len("Bearer "):])
    except JWTError:
        return ANONYMOUS_SUBJECT
    subject = payload.get("sub")
    return ANONYMOUS_SUBJECT if subject is None else str(subject)


class CrmMutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith(CRM_PREFIX)
            or request.method.upper() not in MUTATING_METHODS
        ):
            return await call_next(request)

        retry_after = _limiter.take(
            _subject(request),
            route_group(path),
            capacity=settings.rate_limit_crm_mutations_per_minute,
            window_seconds=60,
        )
        if not retry_after:
            return await call_next(request)

        response = error_response(request, status_code=429, code="RATE_LIMITED", message="Too many requests")
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _limiter.clear()
