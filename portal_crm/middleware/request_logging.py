from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from portal_crm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("portal_crm.request")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            logger.error("http.error", exc_info=True, extra=self._fields(request, status_code, started))
            raise
        finally:
            path = resolve_http_path_label(request)
            observe_http_request(
                method=request.method,
                path=path,
                status=status_code,
                duration=(time.perf_counter() - started),
            )

        fields = self._fields(request, status_code, started)
        logger.log(logging.WARNING if status_code >= 500 else logging.INFO, "http.request", extra=fields)
        return response

    @staticmethod
    def _fields(request: Request, status_code: int, started: float) -> dict[str, object]:
        return {
            "method": request.method,
            "path": resolve_http_path_label(request),
            "status_code": status_code,
            "duration_ms": _elapsed_ms(started),
            "portal": getattr(request.state, "portal", None),
            "user_id": getattr(request.state, "user_id", None),
        }
