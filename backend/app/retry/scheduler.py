"""
scheduler.py — Background driver for age-banded redelivery.

═══════════════════════════════════════════════════════════════════════════
TIMERS
═══════════════════════════════════════════════════════════════════════════

Three independent asyncio tasks, each ticking every
RETRY_POLL_INTERVAL_SECONDS (10s). A tick runs to completion before its
timer sleeps again; the three timers may overlap each other and intake.

    Timer     Per record in band
    ───────   ─────────────────────────────────────────────────────────────
    first     increment_attempt → deliver(stored content) → remove on success
    second    same as first
    cleanup   remove → ExpiredWithoutSuccess (only if this tick removed it)

A failed retry leaves the record in place with its failure_reason set to
the latest error; it is picked up at the next band or swept by cleanup. Nothing is re-queued outside the band system.
One failing record never aborts the rest of its tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from backend.app.core.errors import ChainExhaustedError, StoreUnavailableError
from backend.app.notifications.events import EventSink, ExpiredWithoutSuccess, LoggingEventSink
from backend.app.notifications.models import RetryBand, RetryRecord
from backend.app.notifications.orchestrator import DeliveryOrchestrator
from backend.app.retry.store import RetryStore

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """What one band tick did."""
    band: RetryBand
    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    removed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "band": self.band.value,
            "scanned": self.scanned,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "removed": self.removed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class RetryScheduler:
    """
    Runs the first / second / cleanup timers.

    Usage:
        scheduler = RetryScheduler(store, orchestrator, event_sink)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: RetryStore,
        orchestrator: DeliveryOrchestrator,
        event_sink: Optional[EventSink] = None,
        poll_interval: float = 10.0,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._events: EventSink = event_sink or LoggingEventSink()
        self._interval = poll_interval
        self._tasks: Dict[RetryBand, asyncio.Task] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start all three timers. No-op when already running."""
        if self._tasks:
            return
        for band in RetryBand:
            self._tasks[band] = asyncio.create_task(
                self._run_timer(band), name=f"retry-{band.value}",
            )
        logger.info(
            "Retry scheduler started (interval=%.1fs, bands=%s)",
            self._interval, ", ".join(b.value for b in RetryBand),
        )

    async def stop(self) -> None:
        """Cancel every timer. Safe to call when not running."""
        if not self._tasks:
            return
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Retry scheduler stopped")

    async def _run_timer(self, band: RetryBand) -> None:
        while True:
            try:
                await self.tick(band)
            except asyncio.CancelledError:
                raise
            except StoreUnavailableError as exc:
                logger.warning("Retry %s tick skipped: %s", band.value, exc.message)
            except Exception:  # noqa: BLE001 - a broken tick must not kill its timer
                logger.exception("Retry %s tick failed", band.value)
            await asyncio.sleep(self._interval)

    async def tick(self, band: RetryBand) -> TickSummary:
        if band == RetryBand.CLEANUP:
            return await self.process_cleanup()
        return await self.process_band(band)

    # ── Retry bands ──

    async def process_band(self, band: RetryBand) -> TickSummary:
        """Redeliver every record currently inside a retry band."""
        summary = TickSummary(band=band)
        records = await self._store.items_in_band(band)
        summary.scanned = len(records)
        if not records:
            return summary

        logger.info(
            "Processing %d notification(s) for %s retry", len(records), band.value,
            extra={"band": band.value},
        )
        for record in records:
            try:
                await self._retry_one(record, band, summary)
            except Exception as exc:  # noqa: BLE001 - isolate per record
                summary.errors.append(f"{record.notification_id}: {exc}")
                logger.exception(
                    "Error processing retry for %s", record.notification_id,
                    extra={"notification_id": record.notification_id, "band": band.value},
                )
        return summary

    async def _retry_one(self, record: RetryRecord, band: RetryBand, summary: TickSummary) -> None:
        nid = record.notification_id
        attempt = await self._store.increment_attempt(nid)
        if attempt is None:
            # Removed by a concurrent tick between scan and increment
            summary.skipped += 1
            return

        logger.info(
            "Retrying notification %s (attempt %d, %s band)", nid, attempt, band.value,
            extra={
                "notification_id": nid,
                "user_id": record.user_id,
                "channel": record.channel.value,
                "attempt": attempt,
                "band": band.value,
            },
        )
        try:
            result = await self._orchestrator.deliver(
                record.channel, record.destination, record.rendered_content,
                notification_id=nid,
            )
        except ChainExhaustedError as exc:
            summary.failed += 1
            logger.warning(
                "Retry %d for %s failed: %s", attempt, nid, exc.message,
                extra={"notification_id": nid, "attempt": attempt, "outcome": "failure"},
            )
            await self._store.record_failure(nid, exc.message)
            return

        summary.succeeded += 1
        if await self._store.remove(nid):
            summary.removed += 1
        logger.info(
            "Notification %s delivered on retry %d via %s", nid, attempt, result.provider,
            extra={
                "notification_id": nid,
                "attempt": attempt,
                "provider": result.provider,
                "outcome": "success",
            },
        )

    # ── Cleanup ──

    async def process_cleanup(self) -> TickSummary:
        """Drop records past the cleanup mark and report each one once."""
        summary = TickSummary(band=RetryBand.CLEANUP)
        records = await self._store.items_in_band(RetryBand.CLEANUP)
        summary.scanned = len(records)
        if not records:
            return summary

        logger.warning("Cleaning up %d expired notification(s) from retry queue", len(records))
        for record in records:
            try:
                removed = await self._store.remove(record.notification_id)
            except Exception as exc:  # noqa: BLE001 - isolate per record
                summary.errors.append(f"{record.notification_id}: {exc}")
                logger.exception(
                    "Error during cleanup of %s", record.notification_id,
                    extra={"notification_id": record.notification_id},
                )
                continue
            if not removed:
                # Another tick or a successful retry got there first
                summary.skipped += 1
                continue
            summary.removed += 1
            self._events.emit(ExpiredWithoutSuccess(
                notification_id=record.notification_id,
                user_id=record.user_id,
                channel=record.channel.value,
                attempt_count=record.attempt_count,
                failure_reason=record.failure_reason,
            ))
        return summary
