"""
service.py — Notification intake: deliver now, or queue for retry.

    submit(request)
        │
        ├─ render content (once)
        ├─ deliver through the channel chain
        │     ├─ success ──────────────────────────▶ DELIVERED
        │     └─ ChainExhaustedError
        │           ├─ store.put(RetryRecord) ok ──▶ QUEUED_FOR_RETRY
        │           └─ StoreUnavailableError ─────▶ LOST  (+ NotificationLost event)
        └─ SubmissionResult
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from backend.app.core.errors import ChainExhaustedError, StoreUnavailableError
from backend.app.notifications.events import EventSink, LoggingEventSink, NotificationLost
from backend.app.notifications.models import (
    NotificationRequest,
    RetryRecord,
    SubmissionOutcome,
    SubmissionResult,
)
from backend.app.notifications.orchestrator import DeliveryOrchestrator
from backend.app.notifications.rendering import render_content
from backend.app.retry.store import RetryStats, RetryStore

logger = logging.getLogger(__name__)


class NotificationService:
    """Front door of the dispatch core, shared by every API route."""

    def __init__(
        self,
        orchestrator: DeliveryOrchestrator,
        store: RetryStore,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._events: EventSink = event_sink or LoggingEventSink()

    async def submit(self, request: NotificationRequest) -> SubmissionResult:
        content = render_content(request)
        destination = request.resolved_destination
        nid = request.notification_id
        log_extra = {
            "notification_id": nid,
            "user_id": request.user_id,
            "channel": request.channel.value,
        }
        logger.info("Processing %s notification for user %s", request.channel.value,
                    request.user_id, extra=log_extra)

        try:
            delivery = await self._orchestrator.deliver(
                request.channel, destination, content, notification_id=nid,
            )
        except ChainExhaustedError as exc:
            return await self._queue_for_retry(request, content, exc)

        return SubmissionResult(
            notification_id=nid,
            channel=request.channel,
            outcome=SubmissionOutcome.DELIVERED,
            content=content,
            provider=delivery.provider,
            attempted_providers=delivery.attempted_providers,
        )

    async def _queue_for_retry(self, request, content, exc: ChainExhaustedError) -> SubmissionResult:
        nid = request.notification_id
        record = RetryRecord.from_request(request, content, failure_reason=exc.message)
        try:
            await self._store.put(record, exc.message)
        except StoreUnavailableError as store_exc:
            self._events.emit(NotificationLost(
                notification_id=nid,
                user_id=request.user_id,
                channel=request.channel.value,
                failure_reason=exc.message,
                store_error=store_exc.message,
            ))
            return SubmissionResult(
                notification_id=nid,
                channel=request.channel,
                outcome=SubmissionOutcome.LOST,
                content=content,
                error=f"{exc.message}; {store_exc.message}",
                attempted_providers=exc.attempted_providers,
            )

        logger.warning(
            "Notification %s queued for retry: %s", nid, exc.message,
            extra={
                "notification_id": nid,
                "channel": request.channel.value,
                "chain_size": exc.chain_size,
                "outcome": SubmissionOutcome.QUEUED_FOR_RETRY.value,
            },
        )
        return SubmissionResult(
            notification_id=nid,
            channel=request.channel,
            outcome=SubmissionOutcome.QUEUED_FOR_RETRY,
            content=content,
            error=exc.message,
            attempted_providers=exc.attempted_providers,
        )

    async def submit_batch(self, requests: Iterable[NotificationRequest]) -> List[SubmissionResult]:
        """Submit each request in order; one outcome per request."""
        return [await self.submit(request) for request in requests]

    async def retry_stats(self) -> RetryStats:
        return await self._store.stats()

    async def get_retry_record(self, notification_id: str) -> Optional[RetryRecord]:
        return await self._store.get(notification_id)

    def providers(self) -> Dict[str, List[str]]:
        return self._orchestrator.providers()
