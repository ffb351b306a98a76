"""
Request correlation for the gateway.

Every request gets an id (the client's X-Request-ID or a fresh one),
exposed to handlers through request.state and a context variable,
echoed on the response and recorded in the audit trail with its
duration and outcome. Health probes are not audited.
"""

from __future__ import annotations

import time
import uuid
from contextvars import ContextVar
from typing import Awaitable, Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from subterm.isolation.audit import AuditLogger, configure_audit_logger, get_audit_logger
from subterm.server.config import get_settings

REQUEST_ID_HEADER = "X-Request-ID"
UNAUDITED_PATHS = ("/health",)

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def generate_request_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Assigns request ids and audits the outcome of each API call."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        audit: Optional[AuditLogger] = None
        if not request.url.path.startswith(UNAUDITED_PATHS):
            audit = get_audit_logger()
            audit.log_request_submitted(request_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            if audit is not None:
                audit.log_request_failed(request_id, type(e).__name__, _elapsed_ms(started))
            raise
        finally:
            request_id_var.reset(token)

        if audit is not None:
            if response.status_code < 400:
                audit.log_request_completed(request_id, _elapsed_ms(started))
            else:
                audit.log_request_failed(
                    request_id, f"http_{response.status_code}", _elapsed_ms(started)
                )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def setup_audit_logging() -> None:
    """Point the audit trail at SUBTERM_AUDIT_LOG_PATH (stdout when unset)."""
    configure_audit_logger(output_path=get_settings().audit_log_path)
