"""
FastAPI route: Notification intake and retry-queue visibility.

Provides endpoints to:
    POST /api/v1/notifications                    — submit one notification
    POST /api/v1/notifications/batch              — submit several
    GET  /api/v1/notifications/retry/stats        — retry queue aggregate
    GET  /api/v1/notifications/events/stats       — delivery event counters
    GET  /api/v1/notifications/retry/{id}         — one pending retry record
    GET  /api/v1/notifications/providers          — provider chain per channel
    GET  /api/info                                — service description
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from backend.app.core.config import settings
from backend.app.core.errors import NotFoundError, NotificationServiceError
from backend.app.core.middleware import tag_intake, tag_outcomes
from backend.app.notifications.events import EventRecorder
from backend.app.notifications.models import (
    Channel,
    NotificationRequest,
    SubmissionOutcome,
    SubmissionResult,
)
from backend.app.notifications.service import NotificationService

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])
info_router = APIRouter(prefix="/api", tags=["info"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class NotificationInput(BaseModel):
    """One notification to dispatch."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(
        ..., min_length=1, examples=["user123"],
        validation_alias=AliasChoices("user_id", "userId"),
    )
    channel: Channel = Field(
        ..., examples=["email"],
        validation_alias=AliasChoices("channel", "type"),
        description="email / sms / push",
    )
    title: str = Field(..., min_length=1, examples=["Order Confirmation"])
    message: str = Field(..., min_length=1, examples=["Your order has been confirmed"])
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"orderId": "ORD-123", "email": "user@example.com"}],
    )
    destination: Optional[str] = Field(
        None, description="Explicit address; otherwise resolved from metadata or user_id",
    )

    def to_request(self) -> NotificationRequest:
        return NotificationRequest(
            user_id=self.user_id,
            channel=self.channel,
            title=self.title,
            message=self.message,
            metadata=dict(self.metadata),
            destination=self.destination,
        )


class BatchInput(BaseModel):
    notifications: List[NotificationInput] = Field(..., min_length=1, max_length=500)


class SubmissionResponse(BaseModel):
    """Intake result for one notification."""
    success: bool
    notification_id: str
    channel: str
    outcome: str
    provider: Optional[str] = None
    error: Optional[str] = None
    attempted_providers: List[str] = Field(default_factory=list)
    rendered: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class BatchResponse(BaseModel):
    success: bool
    batch_id: str
    total_notifications: int
    delivered: int
    queued_for_retry: int
    lost: int
    results: List[SubmissionResponse]
    timestamp: str


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def get_notification_service(request: Request) -> NotificationService:
    """Service built in the application lifespan."""
    service = getattr(request.app.state, "notification_service", None)
    if service is None:
        raise NotificationServiceError(
            "Notification service is not initialised",
            status_code=503,
            error_code="SERVICE_UNAVAILABLE",
        )
    return service


def get_event_recorder(request: Request) -> EventRecorder:
    """In-process event counters built in the application lifespan."""
    recorder = getattr(request.app.state, "event_recorder", None)
    if recorder is None:
        raise NotificationServiceError(
            "Event recorder is not initialised",
            status_code=503,
            error_code="SERVICE_UNAVAILABLE",
        )
    return recorder


def _to_response(result: SubmissionResult) -> SubmissionResponse:
    return SubmissionResponse(
        success=result.outcome != SubmissionOutcome.LOST,
        notification_id=result.notification_id,
        channel=result.channel.value,
        outcome=result.outcome.value,
        provider=result.provider,
        error=result.error,
        attempted_providers=result.attempted_providers,
        rendered=result.content.to_dict(),
        timestamp=result.submitted_at.isoformat(),
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=SubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a single notification",
    description=(
        "Renders the content and delivers it through the channel's provider "
        "chain. If every provider fails the notification is queued for "
        "age-banded retry; if the retry store is also down it is reported "
        "as lost with 503."
    ),
)
async def submit_notification(
    body: NotificationInput,
    request: Request,
    service: NotificationService = Depends(get_notification_service),
):
    notification = body.to_request()
    tag_intake(request, [notification])
    result = await service.submit(notification)
    tag_outcomes(request, [result])
    response = _to_response(result)
    if result.outcome == SubmissionOutcome.LOST:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(),
        )
    return response


@router.post(
    "/batch",
    response_model=BatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send batch notifications",
)
async def submit_batch(
    body: BatchInput,
    request: Request,
    service: NotificationService = Depends(get_notification_service),
):
    notifications = [n.to_request() for n in body.notifications]
    tag_intake(request, notifications)
    results = await service.submit_batch(notifications)
    tag_outcomes(request, results)
    outcomes = [r.outcome for r in results]
    return BatchResponse(
        success=SubmissionOutcome.LOST not in outcomes,
        batch_id=str(uuid.uuid4()),
        total_notifications=len(results),
        delivered=outcomes.count(SubmissionOutcome.DELIVERED),
        queued_for_retry=outcomes.count(SubmissionOutcome.QUEUED_FOR_RETRY),
        lost=outcomes.count(SubmissionOutcome.LOST),
        results=[_to_response(r) for r in results],
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get(
    "/retry/stats",
    summary="Retry queue statistics",
    description="Counts per age band. For dashboards only.",
)
async def retry_stats(service: NotificationService = Depends(get_notification_service)):
    stats = await service.retry_stats()
    return stats.to_dict()


@router.get(
    "/events/stats",
    summary="Delivery event counters",
    description=(
        "Attempts, successes, failures, expiries and losses seen by this "
        "process since startup. Not shared across workers."
    ),
)
async def event_stats(recorder: EventRecorder = Depends(get_event_recorder)):
    return recorder.snapshot()


@router.get(
    "/retry/{notification_id}",
    summary="Get a pending retry record",
)
async def get_retry_record(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    record = await service.get_retry_record(notification_id)
    if record is None:
        raise NotFoundError("RetryRecord", notification_id=notification_id)
    return record.to_dict()


@router.get(
    "/providers",
    summary="List provider chains",
    description="Provider names per channel in fallback order. Empty means mock delivery.",
)
async def list_providers(service: NotificationService = Depends(get_notification_service)):
    return {"channels": service.providers()}


@info_router.get("/info", summary="Service information")
async def info():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "channels": [c.value for c in Channel],
        "retry_policy": {
            "retention_seconds": settings.RETRY_RETENTION_SECONDS,
            "first_mark_minutes": settings.RETRY_FIRST_MARK_MINUTES,
            "second_mark_minutes": settings.RETRY_SECOND_MARK_MINUTES,
            "cleanup_mark_minutes": settings.RETRY_CLEANUP_MARK_MINUTES,
            "poll_interval_seconds": settings.RETRY_POLL_INTERVAL_SECONDS,
        },
        "endpoints": {
            "submit": "POST /api/v1/notifications",
            "batch": "POST /api/v1/notifications/batch",
            "retry_stats": "GET /api/v1/notifications/retry/stats",
            "event_stats": "GET /api/v1/notifications/events/stats",
            "providers": "GET /api/v1/notifications/providers",
            "health": "GET /health",
        },
        "docs": "/docs",
    }
