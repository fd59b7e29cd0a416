"""
Request middleware — correlation IDs, timing and intake tagging.

Provides:
    • X-Request-ID header (taken from the caller or generated)
    • X-Process-Time header
    • X-Notification-ID header on single-notification intake responses
    • One structured log line per request, carrying the notification id(s)
      and delivery outcome(s) when the request submitted notifications
    • Request context (request id, notification id, channel) for log lines
      emitted while delivering

Intake routes call ``tag_intake`` before delivery and ``tag_outcomes``
after it. The ids travel on ``request.state``, which the middleware and
the endpoint share through the ASGI scope.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from typing import Any, Dict, Iterable, List

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import bind_request_context, set_request_context

logger = logging.getLogger(__name__)

# Probes and docs are not worth a log line each
QUIET_PREFIXES = ("/health", "/docs", "/redoc", "/openapi", "/favicon")

NOTIFICATION_ID_HEADER = "X-Notification-ID"


def tag_intake(request: Request, notifications: Iterable[Any]) -> None:
    """
    Record the notifications a request is about to submit.

    A single notification binds its id and channel into the log context so
    every backend attempt logged during delivery carries them; a batch
    binds only its size.
    """
    items = list(notifications)
    request.state.notification_ids = [n.notification_id for n in items]
    if len(items) == 1:
        bind_request_context(
            notification_id=items[0].notification_id,
            channel=items[0].channel.value,
        )
    else:
        bind_request_context(batch_size=len(items))


def tag_outcomes(request: Request, results: Iterable[Any]) -> None:
    """Record the submission outcome of each tagged notification."""
    request.state.outcomes = [r.outcome.value for r in results]


def _intake_fields(request: Request) -> Dict[str, Any]:
    ids: List[str] = getattr(request.state, "notification_ids", None) or []
    outcomes: List[str] = getattr(request.state, "outcomes", None) or []
    if not ids:
        return {}
    if len(ids) == 1:
        fields: Dict[str, Any] = {"notification_id": ids[0]}
        if outcomes:
            fields["outcome"] = outcomes[0]
        return fields
    counts = Counter(outcomes)
    return {
        "notification_count": len(ids),
        "outcome": ", ".join(f"{k}={v}" for k, v in sorted(counts.items())),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag every request with a correlation id and log its duration."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, client_ip,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": 500,
                    "endpoint": path,
                    **_intake_fields(request),
                },
            )
            raise
        finally:
            set_request_context()

        duration_ms = (time.perf_counter() - start) * 1000
        intake = _intake_fields(request)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        if "notification_id" in intake:
            response.headers[NOTIFICATION_ID_HEADER] = intake["notification_id"]

        if not path.startswith(QUIET_PREFIXES):
            log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
            suffix = f" {intake['outcome']}" if intake.get("outcome") else ""
            logger.log(
                log_level,
                "%s %s → %d (%.1fms) [%s]%s",
                request.method, path, response.status_code, duration_ms, client_ip, suffix,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                    **intake,
                },
            )
        return response
