"""
test_notification_service.py — Intake outcomes and content rendering.

Covers:
    • Content rendering per channel
    • Destination resolution from metadata
    • DELIVERED / QUEUED_FOR_RETRY / LOST outcomes
    • NotificationLost reported distinctly from queued
    • Batch submission

Run with:
    pytest tests/test_notification_service.py -v
"""

from __future__ import annotations

import pytest

from backend.app.notifications.events import EventRecorder, NotificationLost
from backend.app.notifications.models import (
    Channel,
    NotificationRequest,
    RetryRecord,
    SubmissionOutcome,
    resolve_destination,
)
from backend.app.notifications.orchestrator import DeliveryOrchestrator
from backend.app.notifications.rendering import render_content
from backend.app.notifications.service import NotificationService

from tests.conftest import FakeBackend, make_chain


def _make_request(
    channel: Channel = Channel.EMAIL,
    title: str = "Order Confirmation",
    message: str = "Your order has been confirmed",
    metadata=None,
    destination=None,
) -> NotificationRequest:
    return NotificationRequest(
        user_id="user123",
        channel=channel,
        title=title,
        message=message,
        metadata=metadata if metadata is not None else {"email": "user@example.com"},
        destination=destination,
    )


def _make_service(store, *backends, channel=Channel.EMAIL):
    recorder = EventRecorder()
    chains = {channel: make_chain(channel, *backends)} if backends else {}
    orchestrator = DeliveryOrchestrator(chains, event_sink=recorder, send_timeout=1.0)
    return NotificationService(orchestrator, store, recorder), recorder


# ═══════════════════════════════════════════════════════════════════════════
# Rendering
# ═══════════════════════════════════════════════════════════════════════════

class TestRenderContent:

    def test_email_subject_html_and_text(self):
        content = render_content(_make_request(title="Hi <b>", message="line one\nline two"))
        assert content.subject == "Notification: Hi <b>"
        assert "<h2>Hi &lt;b&gt;</h2>" in content.html
        assert "<p>line one</p><p>line two</p>" in content.html
        assert content.text == "Hi <b>\n\nline one\nline two"
        assert content.push_payload is None

    def test_sms_is_plain_text(self):
        content = render_content(_make_request(Channel.SMS, title="OTP", message="1234"))
        assert content.text == "OTP: 1234"
        assert content.html is None
        assert content.subject is None

    def test_push_payload_carries_metadata(self):
        content = render_content(
            _make_request(Channel.PUSH, metadata={"orderId": "ORD-123"}),
        )
        assert content.push_payload == {
            "title": "Order Confirmation",
            "body": "Your order has been confirmed",
            "data": {"orderId": "ORD-123"},
        }
        assert content.plain_text == "Your order has been confirmed"


class TestResolveDestination:

    def test_explicit_destination_wins(self):
        assert resolve_destination(Channel.EMAIL, "u", {"email": "m@x"}, "e@x") == "e@x"

    @pytest.mark.parametrize(
        "channel, metadata, expected",
        [
            (Channel.EMAIL, {"email": "m@example.com"}, "m@example.com"),
            (Channel.SMS, {"phone": "+254700000001"}, "+254700000001"),
            (Channel.SMS, {"mobile": "0712345678"}, "0712345678"),
            (Channel.PUSH, {"device_token": "tok"}, "tok"),
            (Channel.PUSH, {"to": "fallback"}, "fallback"),
        ],
    )
    def test_metadata_keys(self, channel, metadata, expected):
        assert resolve_destination(channel, "user123", metadata) == expected

    def test_falls_back_to_user_id(self):
        assert resolve_destination(Channel.SMS, "+254711111111", {}) == "+254711111111"


# ═══════════════════════════════════════════════════════════════════════════
# Submission Outcomes
# ═══════════════════════════════════════════════════════════════════════════

class TestSubmit:

    async def test_delivered(self, store):
        backend = FakeBackend("SendGrid")
        service, _ = _make_service(store, backend)
        result = await service.submit(_make_request())

        assert result.outcome == SubmissionOutcome.DELIVERED
        assert result.provider == "SendGrid"
        assert backend.calls[0][0] == "user@example.com"
        assert backend.calls[0][1].subject == "Notification: Order Confirmation"
        assert await store.list_all() == []

    async def test_mock_delivery_when_no_providers(self, store):
        service, _ = _make_service(store)
        result = await service.submit(_make_request(Channel.PUSH))
        assert result.outcome == SubmissionOutcome.DELIVERED
        assert result.provider == "mock"

    async def test_exhausted_chain_is_queued_for_retry(self, store, clock):
        service, _ = _make_service(
            store, FakeBackend("SendGrid", "fail"), FakeBackend("Mailgun", "fail"),
        )
        request = _make_request()

        result = await service.submit(request)

        assert result.outcome == SubmissionOutcome.QUEUED_FOR_RETRY
        assert result.attempted_providers == ["SendGrid", "Mailgun"]
        assert "Mailgun" in result.error

        record = await store.get(request.notification_id)
        assert isinstance(record, RetryRecord)
        assert record.attempt_count == 1
        assert record.destination == "user@example.com"
        assert record.rendered_content == result.content
        assert record.metadata == {"email": "user@example.com"}
        assert "Mailgun" in record.failure_reason

    async def test_store_down_means_lost(self, store, redis_server):
        service, recorder = _make_service(store, FakeBackend("SendGrid", "fail"))
        redis_server.connected = False
        request = _make_request()

        result = await service.submit(request)

        assert result.outcome == SubmissionOutcome.LOST
        assert "Retry store unavailable" in result.error
        (lost,) = recorder.of_type(NotificationLost)
        assert lost.notification_id == request.notification_id
        assert lost.channel == "email"
        assert recorder.snapshot()["lost"] == 1

    async def test_store_down_does_not_affect_successful_delivery(self, store, redis_server):
        service, recorder = _make_service(store, FakeBackend("SendGrid"))
        redis_server.connected = False
        result = await service.submit(_make_request())
        assert result.outcome == SubmissionOutcome.DELIVERED
        assert recorder.of_type(NotificationLost) == []

    async def test_batch_returns_outcome_per_request(self, store):
        service, _ = _make_service(store, FakeBackend("Twilio", channel=Channel.SMS), channel=Channel.SMS)
        requests = [
            _make_request(Channel.SMS, metadata={"phone": "+254700000001"}),
            _make_request(Channel.EMAIL),
        ]
        results = await service.submit_batch(requests)
        assert [r.outcome for r in results] == [SubmissionOutcome.DELIVERED] * 2
        assert [r.provider for r in results] == ["Twilio", "mock"]


class TestReadAccessors:

    async def test_retry_stats_and_record(self, store):
        service, _ = _make_service(store, FakeBackend("SendGrid", "fail"))
        request = _make_request()
        await service.submit(request)

        stats = await service.retry_stats()
        assert stats.total == 1
        record = await service.get_retry_record(request.notification_id)
        assert record.user_id == "user123"
        assert await service.get_retry_record("missing") is None

    def test_providers(self, store):
        service, _ = _make_service(store, FakeBackend("SendGrid"))
        assert service.providers()["email"] == ["SendGrid"]
