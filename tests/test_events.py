"""
test_events.py — Delivery event sinks.

Covers:
    • Structured log records per event type
    • Recorder counters and bounded history
    • Composite sink isolation

Run with:
    pytest tests/test_events.py -v
"""

from __future__ import annotations

import logging

from backend.app.notifications.events import (
    AttemptEvent,
    CompositeEventSink,
    EventRecorder,
    ExpiredWithoutSuccess,
    LoggingEventSink,
    NotificationLost,
)


def _attempt(success: bool = True, attempt: int = 1) -> AttemptEvent:
    return AttemptEvent(
        channel="sms",
        destination="+254712345678",
        provider="Twilio",
        attempt=attempt,
        chain_size=2,
        success=success,
        error=None if success else "Twilio error: 503",
        notification_id="n-1",
    )


def _expired() -> ExpiredWithoutSuccess:
    return ExpiredWithoutSuccess(
        notification_id="n-1", user_id="user123", channel="sms",
        attempt_count=3, failure_reason="Twilio error: 503",
    )


def _lost() -> NotificationLost:
    return NotificationLost(
        notification_id="n-2", user_id="user123", channel="email",
        failure_reason="All 1 email provider(s) failed", store_error="connection refused",
    )


class TestLoggingEventSink:

    def test_success_logged_at_info(self, caplog):
        with caplog.at_level(logging.INFO):
            LoggingEventSink().emit(_attempt())
        (record,) = caplog.records
        assert record.levelno == logging.INFO
        assert record.provider == "Twilio"
        assert record.outcome == "success"

    def test_failure_logged_at_warning(self, caplog):
        with caplog.at_level(logging.INFO):
            LoggingEventSink().emit(_attempt(success=False))
        (record,) = caplog.records
        assert record.levelno == logging.WARNING
        assert "Twilio error: 503" in record.getMessage()

    def test_expiry_and_loss_logged_at_error(self, caplog):
        with caplog.at_level(logging.INFO):
            sink = LoggingEventSink()
            sink.emit(_expired())
            sink.emit(_lost())
        assert [r.levelno for r in caplog.records] == [logging.ERROR, logging.ERROR]
        assert [r.outcome for r in caplog.records] == ["expired", "lost"]


class TestEventRecorder:

    def test_counters(self):
        recorder = EventRecorder()
        for event in (_attempt(False), _attempt(True, 2), _expired(), _lost()):
            recorder.emit(event)
        assert recorder.snapshot() == {
            "attempts": 2,
            "attempt_successes": 1,
            "attempt_failures": 1,
            "expired_without_success": 1,
            "lost": 1,
        }
        assert len(recorder.of_type(AttemptEvent)) == 2

    def test_history_is_bounded(self):
        recorder = EventRecorder(history_size=3)
        for i in range(5):
            recorder.emit(_attempt(attempt=i + 1))
        assert [e.attempt for e in recorder.events] == [3, 4, 5]
        assert recorder.snapshot()["attempts"] == 5


class TestCompositeEventSink:

    def test_failing_sink_does_not_block_others(self, caplog):
        class Broken:
            def emit(self, event):
                raise RuntimeError("sink down")

        recorder = EventRecorder()
        with caplog.at_level(logging.ERROR):
            CompositeEventSink([Broken(), recorder]).emit(_lost())

        assert recorder.snapshot()["lost"] == 1
        assert "Event sink" in caplog.text
