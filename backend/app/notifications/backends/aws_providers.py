"""
aws_providers.py — Amazon SES (email) and SNS (SMS) backends.

    Provider   Call                         Credentials
    ────────   ───────────────────────────  ─────────────────────────────────
    SES        ses.send_email               access key, secret, region, from
    SNS        sns.publish(PhoneNumber=…)   access key, secret, region

boto3 clients are synchronous; every call runs on a worker thread via
asyncio.to_thread, the same way SMTP sends do. botocore's own retries are
disabled: a failed send falls through to the next provider in the chain
and, past that, to the retry store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from backend.app.core.errors import BackendDeliveryError
from backend.app.notifications.backends.base import DeliveryBackend
from backend.app.notifications.backends.email_providers import _parts
from backend.app.notifications.backends.sms_providers import normalize_msisdn, sms_text
from backend.app.notifications.models import Channel, RenderedContent

logger = logging.getLogger(__name__)

DEFAULT_REGION = "us-east-1"


def make_aws_client(
    service: str,
    access_key_id: str,
    secret_access_key: str,
    region: str = DEFAULT_REGION,
    *,
    timeout_seconds: float = 20.0,
) -> Any:
    """boto3 client with explicit credentials and no SDK-level retries."""
    return boto3.client(
        service,
        region_name=region,
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        config=Config(
            connect_timeout=timeout_seconds,
            read_timeout=timeout_seconds,
            retries={"max_attempts": 1, "mode": "standard"},
        ),
    )


def _describe(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        prefix = f"{status} - " if status else ""
        message = error.get("Message")
        code = error.get("Code", "Unknown")
        return f"{prefix}{code}: {message}" if message else f"{prefix}{code}"
    return str(exc)


class AwsBackend(DeliveryBackend):
    """Shared plumbing: one boto3 client, calls off the event loop."""

    def __init__(self, client: Any, region: str = DEFAULT_REGION) -> None:
        self._client = client
        self._region = region

    async def _call(self, operation: str, **params: Any) -> dict:
        method = getattr(self._client, operation)
        try:
            return await asyncio.to_thread(method, **params)
        except (ClientError, BotoCoreError) as exc:
            raise BackendDeliveryError(
                self.name, _describe(exc), region=self._region, operation=operation,
            ) from exc


class SesBackend(AwsBackend):
    name = "AWS SES"
    channel = Channel.EMAIL

    def __init__(self, client: Any, from_email: str, region: str = DEFAULT_REGION) -> None:
        super().__init__(client, region)
        self._from = from_email

    async def send(self, destination: str, content: RenderedContent) -> None:
        subject, text, html = _parts(content)
        data = await self._call(
            "send_email",
            Source=self._from,
            Destination={"ToAddresses": [destination]},
            Message={
                "Subject": {"Data": subject},
                "Body": {"Text": {"Data": text}, "Html": {"Data": html}},
            },
        )
        logger.info(
            "[EMAIL] ✓ %s sent to %s, MessageId: %s",
            self.name, destination, data.get("MessageId"),
        )


class SnsBackend(AwsBackend):
    """Direct SMS publish; numbers are sent in E.164 (+2547…)."""

    name = "AWS SNS"
    channel = Channel.SMS

    def __init__(
        self,
        client: Any,
        region: str = DEFAULT_REGION,
        sender_id: Optional[str] = None,
    ) -> None:
        super().__init__(client, region)
        self._sender_id = sender_id

    async def send(self, destination: str, content: RenderedContent) -> None:
        params: dict = {
            "PhoneNumber": "+" + normalize_msisdn(destination),
            "Message": sms_text(content),
        }
        if self._sender_id:
            params["MessageAttributes"] = {
                "AWS.SNS.SMS.SenderID": {"DataType": "String", "StringValue": self._sender_id},
            }
        data = await self._call("publish", **params)
        logger.info(
            "[SMS] ✓ %s sent to %s, MessageId: %s",
            self.name, destination, data.get("MessageId"),
        )
