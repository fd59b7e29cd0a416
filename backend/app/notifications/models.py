"""
models.py — Shared data structures for notification dispatch.

Defines:
    • Channel           — logical notification type (email / sms / push)
    • RenderedContent   — pre-rendered subject / html / text / push JSON
    • NotificationRequest — one inbound notification
    • RetryRecord       — durable record of a notification awaiting redelivery
    • DeliveryResult    — successful outcome of a provider chain
    • SubmissionOutcome / SubmissionResult — what intake did with a request
    • RetryBand         — age windows the retry scheduler acts on

═══════════════════════════════════════════════════════════════════════════
RETRY RECORD LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    first delivery failure ──▶ RetryRecord(attempt_count=1, created_at=now)
                                    │
                 scheduler tick     │  age measured from created_at only
                                    ▼
        ┌──────────────┬──────────────────┬─────────────────────┐
        │ age [2,3) min│  age [4,5) min   │  age ≥ 5 min        │
        │ FIRST band   │  SECOND band     │  CLEANUP band       │
        │ retry        │  retry           │  drop + expiry event│
        └──────────────┴──────────────────┴─────────────────────┘

A record is removed the instant a retry succeeds, or by cleanup.
Nothing but the retry scheduler mutates a stored record.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Logical notification channel; selects the provider chain."""
    EMAIL = "email"
    SMS   = "sms"
    PUSH  = "push"


class SubmissionOutcome(str, Enum):
    """What happened to a submitted notification."""
    DELIVERED        = "delivered"         # a provider (or mock) accepted it
    QUEUED_FOR_RETRY = "queued_for_retry"  # chain exhausted, retry record stored
    LOST             = "lost"              # chain exhausted AND store unavailable


class RetryBand(str, Enum):
    """Age window at which the scheduler acts on a record."""
    FIRST   = "first"
    SECOND  = "second"
    CLEANUP = "cleanup"


# Metadata keys consulted for a destination, per channel, before "to"
DESTINATION_KEYS: Dict[Channel, List[str]] = {
    Channel.EMAIL: ["email"],
    Channel.SMS:   ["phone", "mobile"],
    Channel.PUSH:  ["device_token", "push_token"],
}


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(raw: str) -> datetime:
    ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def resolve_destination(
    channel: Channel,
    user_id: str,
    metadata: Optional[Dict[str, Any]] = None,
    explicit: Optional[str] = None,
) -> str:
    """
    Pick the address a backend should deliver to.

    Order: explicit destination, channel-specific metadata key,
    metadata["to"], then the user id itself.
    """
    if explicit:
        return explicit
    metadata = metadata or {}
    for key in DESTINATION_KEYS.get(channel, []) + ["to"]:
        value = metadata.get(key)
        if value:
            return str(value)
    return user_id


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RenderedContent:
    """
    Channel-ready content, rendered once at intake.

    Email uses subject/html/text, SMS uses text, push uses push_payload.
    Stored verbatim in the retry record so redelivery never re-renders.
    """
    subject: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None
    push_payload: Optional[Dict[str, Any]] = None

    @property
    def plain_text(self) -> str:
        """Best plain-text body available."""
        if self.text:
            return self.text
        if self.push_payload:
            return str(self.push_payload.get("body", ""))
        return self.html or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "html": self.html,
            "text": self.text,
            "push_payload": self.push_payload,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RenderedContent":
        data = data or {}
        return cls(
            subject=data.get("subject"),
            html=data.get("html"),
            text=data.get("text"),
            push_payload=data.get("push_payload"),
        )


@dataclass
class NotificationRequest:
    """An inbound notification, validated before it reaches the core."""
    user_id: str
    channel: Channel
    title: str
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    destination: Optional[str] = None
    notification_id: str = field(default_factory=_generate_id)

    @property
    def resolved_destination(self) -> str:
        return resolve_destination(
            self.channel, self.user_id, self.metadata, self.destination,
        )


@dataclass
class RetryRecord:
    """
    One notification awaiting redelivery after total chain exhaustion.

    Attributes
    ----------
    notification_id : str
        Primary key, stable across every retry attempt.
    user_id, channel, title, body, metadata
        Original payload captured verbatim at first failure.
    destination : str
        Resolved delivery address.
    rendered_content : RenderedContent
        Captured once; redelivered unchanged.
    attempt_count : int
        Delivery attempts so far (1 at first failure). Advisory only.
    failure_reason : str | None
        Last recorded error.
    created_at : datetime
        First failure time. Every age band is measured from here.
    """
    notification_id: str
    user_id: str
    channel: Channel
    title: str
    body: str
    destination: str
    rendered_content: RenderedContent = field(default_factory=RenderedContent)
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempt_count: int = 1
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_now)

    @classmethod
    def from_request(
        cls,
        request: NotificationRequest,
        content: RenderedContent,
        *,
        failure_reason: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "RetryRecord":
        return cls(
            notification_id=request.notification_id,
            user_id=request.user_id,
            channel=request.channel,
            title=request.title,
            body=request.message,
            destination=request.resolved_destination,
            rendered_content=content,
            metadata=dict(request.metadata),
            attempt_count=1,
            failure_reason=failure_reason,
            created_at=created_at or _now(),
        )

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or _now()) - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "channel": self.channel.value,
            "title": self.title,
            "body": self.body,
            "destination": self.destination,
            "rendered_content": self.rendered_content.to_dict(),
            "metadata": self.metadata,
            "attempt_count": self.attempt_count,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryRecord":
        return cls(
            notification_id=data["notification_id"],
            user_id=data.get("user_id", ""),
            channel=Channel(data["channel"]),
            title=data.get("title", ""),
            body=data.get("body", ""),
            destination=data.get("destination") or data.get("user_id", ""),
            rendered_content=RenderedContent.from_dict(data.get("rendered_content")),
            metadata=data.get("metadata") or {},
            attempt_count=int(data.get("attempt_count", 1)),
            failure_reason=data.get("failure_reason"),
            created_at=_parse_timestamp(data["created_at"]),
        )


@dataclass
class DeliveryResult:
    """Successful delivery through a provider chain (or mock delivery)."""
    channel: Channel
    destination: str
    provider: str
    mock: bool = False
    attempted_providers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.value,
            "destination": self.destination,
            "provider": self.provider,
            "mock": self.mock,
            "attempted_providers": self.attempted_providers,
        }


@dataclass
class SubmissionResult:
    """Intake result for one notification."""
    notification_id: str
    channel: Channel
    outcome: SubmissionOutcome
    content: RenderedContent
    provider: Optional[str] = None
    error: Optional[str] = None
    attempted_providers: List[str] = field(default_factory=list)
    submitted_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "channel": self.channel.value,
            "outcome": self.outcome.value,
            "provider": self.provider,
            "error": self.error,
            "attempted_providers": self.attempted_providers,
            "submitted_at": self.submitted_at.isoformat(),
        }
