"""
events.py — Structured delivery events for logging / observability pipelines.

Every provider attempt, every expiry and every lost notification becomes an
event object. Sinks decide what to do with them:

    LoggingEventSink   → structured log line (JSON formatter picks up extras)
    EventRecorder      → in-process counters + recent history (dashboards, tests)
    CompositeEventSink → fan-out to several sinks
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol, Union

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttemptEvent:
    """One backend send attempt inside a provider chain."""
    channel: str
    destination: str
    provider: str
    attempt: int            # 1-based position in the chain
    chain_size: int
    success: bool
    error: Optional[str] = None
    notification_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)

    name = "delivery_attempt"

    @property
    def outcome(self) -> str:
        return "success" if self.success else "failure"


@dataclass(frozen=True)
class ExpiredWithoutSuccess:
    """A retry record reached the cleanup mark and was dropped undelivered."""
    notification_id: str
    user_id: str
    channel: str
    attempt_count: int
    failure_reason: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)

    name = "expired_without_success"


@dataclass(frozen=True)
class NotificationLost:
    """A first failure could not be persisted for retry; no retry guarantee."""
    notification_id: str
    user_id: str
    channel: str
    failure_reason: str
    store_error: str
    occurred_at: datetime = field(default_factory=_now)

    name = "notification_lost"


DeliveryEvent = Union[AttemptEvent, ExpiredWithoutSuccess, NotificationLost]


class EventSink(Protocol):
    """Anything that accepts delivery events."""

    def emit(self, event: DeliveryEvent) -> None:  # pragma: no cover - Protocol
        ...


class LoggingEventSink:
    """Write each event as a structured log record."""

    def __init__(self, logger_: Optional[logging.Logger] = None) -> None:
        self._logger = logger_ or logger

    def emit(self, event: DeliveryEvent) -> None:
        if isinstance(event, AttemptEvent):
            extra = {
                "event": event.name,
                "notification_id": event.notification_id,
                "channel": event.channel,
                "destination": event.destination,
                "provider": event.provider,
                "attempt": event.attempt,
                "chain_size": event.chain_size,
                "outcome": event.outcome,
            }
            if event.success:
                self._logger.info(
                    "[%s] ✓ %s delivered to %s (%d/%d)",
                    event.channel.upper(), event.provider, event.destination,
                    event.attempt, event.chain_size, extra=extra,
                )
            else:
                self._logger.warning(
                    "[%s] %s failed (%d/%d): %s",
                    event.channel.upper(), event.provider,
                    event.attempt, event.chain_size, event.error, extra=extra,
                )
        elif isinstance(event, ExpiredWithoutSuccess):
            self._logger.error(
                "Notification %s expired without success after %d attempt(s): %s",
                event.notification_id, event.attempt_count, event.failure_reason,
                extra={
                    "event": event.name,
                    "notification_id": event.notification_id,
                    "user_id": event.user_id,
                    "channel": event.channel,
                    "attempt_count": event.attempt_count,
                    "outcome": "expired",
                },
            )
        elif isinstance(event, NotificationLost):
            self._logger.error(
                "Notification %s LOST — retry store unavailable (%s); delivery error: %s",
                event.notification_id, event.store_error, event.failure_reason,
                extra={
                    "event": event.name,
                    "notification_id": event.notification_id,
                    "user_id": event.user_id,
                    "channel": event.channel,
                    "outcome": "lost",
                },
            )


class EventRecorder:
    """
    Keeps counters and a bounded history of events.

    Counters: attempts, attempt_successes, attempt_failures, expired, lost.
    """

    def __init__(self, history_size: int = 500) -> None:
        self._events: Deque[DeliveryEvent] = deque(maxlen=history_size)
        self.counters: Counter = Counter()

    def emit(self, event: DeliveryEvent) -> None:
        self._events.append(event)
        if isinstance(event, AttemptEvent):
            self.counters["attempts"] += 1
            key = "attempt_successes" if event.success else "attempt_failures"
            self.counters[key] += 1
        elif isinstance(event, ExpiredWithoutSuccess):
            self.counters["expired"] += 1
        elif isinstance(event, NotificationLost):
            self.counters["lost"] += 1

    @property
    def events(self) -> List[DeliveryEvent]:
        return list(self._events)

    def of_type(self, event_type: type) -> List[DeliveryEvent]:
        return [e for e in self._events if isinstance(e, event_type)]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "attempts": self.counters["attempts"],
            "attempt_successes": self.counters["attempt_successes"],
            "attempt_failures": self.counters["attempt_failures"],
            "expired_without_success": self.counters["expired"],
            "lost": self.counters["lost"],
        }


class CompositeEventSink:
    """Fan events out to several sinks; one failing sink never blocks the rest."""

    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self._sinks: List[EventSink] = list(sinks)

    def emit(self, event: DeliveryEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception:  # noqa: BLE001 - observability must not break delivery
                logger.exception("Event sink %r failed. Continuing with others.", sink)
