"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for delivery and retry storage
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Delivery taxonomy:

    BackendDeliveryError     one provider call failed; the orchestrator
                             recovers by trying the next chain entry
    ChainExhaustedError      every provider of a channel failed; surfaced
                             to the caller of deliver()
    StoreUnavailableError    Redis cannot be reached; always propagates

Expiry without success is terminal but not an exception: the retry
scheduler reports it as an ExpiredWithoutSuccess event.

Usage:
    from backend.app.core.errors import ChainExhaustedError, register_error_handlers

    raise NotFoundError("RetryRecord", notification_id="...")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotificationServiceError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(NotificationServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class BackendDeliveryError(NotificationServiceError):
    """A single delivery backend failed to send (502)."""

    def __init__(self, provider: str, message: str = "", **details: Any):
        super().__init__(
            message=f"{provider} error: {message}",
            status_code=502,
            error_code="BACKEND_DELIVERY_ERROR",
            details={"provider": provider, **details},
        )
        self.provider = provider
        self.reason = message


class ChainExhaustedError(NotificationServiceError):
    """Every backend in a channel's provider chain failed (502)."""

    def __init__(
        self,
        channel: str,
        attempted_providers: List[str],
        last_error: Optional[BackendDeliveryError],
    ):
        self.channel = channel
        self.attempted_providers = list(attempted_providers)
        self.chain_size = len(self.attempted_providers)
        self.last_error = last_error
        last_message = last_error.message if last_error else "no backend attempted"
        super().__init__(
            message=(
                f"All {self.chain_size} {channel} provider(s) failed: {last_message}"
            ),
            status_code=502,
            error_code="CHAIN_EXHAUSTED",
            details={
                "channel": channel,
                "chain_size": self.chain_size,
                "attempted_providers": self.attempted_providers,
                "last_error": last_message,
            },
        )


class StoreUnavailableError(NotificationServiceError):
    """The durable retry store cannot be reached (503)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Retry store unavailable during {operation}: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation, **details},
        )
        self.operation = operation


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(NotificationServiceError)
    async def handle_service_error(request: Request, exc: NotificationServiceError):
        log_level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            log_level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
