"""
sms_providers.py — SMS delivery backends.

    Provider          Transport                       Credentials
    ───────────────   ──────────────────────────────  ──────────────────────────
    HTTP gateway      form-encoded POST to SMS_URL    url, api_key
    Twilio            form-encoded, basic auth        account_sid, auth_token, from
    Nexmo/Vonage      form-encoded, status in body    api_key, api_secret, from
    Africa's Talking  JSON, apiKey header             api_key, username
    Clickatell        JSON, Authorization header      api_key

SMS is plain text only: HTML tags are stripped from the rendered body.
Kenyan local numbers (07xxxxxxxx) are normalised to 2547xxxxxxxx for the
gateways that need international format without a "+".
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import httpx

from backend.app.core.errors import BackendDeliveryError
from backend.app.notifications.backends.base import HttpBackend, strip_html
from backend.app.notifications.models import Channel, RenderedContent

logger = logging.getLogger(__name__)

TWILIO_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
NEXMO_URL = "https://rest.nexmo.com/sms/json"
CLICKATELL_URL = "https://platform.clickatell.com/messages/http/send"

_LOCAL_KE_RE = re.compile(r"^0\d{9}$")


def normalize_msisdn(number: str, country_code: str = "254") -> str:
    """'+254712…' / '0712…' → '254712…' (no plus sign)."""
    mobile = str(number).strip()
    if mobile.startswith("+"):
        mobile = mobile[1:]
    if _LOCAL_KE_RE.match(mobile):
        mobile = country_code + mobile[1:]
    return mobile


def sms_text(content: RenderedContent) -> str:
    """Plain SMS body; very short bodies are padded so gateways accept them."""
    text = strip_html(content.text or content.html or "")
    return text if len(text) >= 3 else f"{text} - message"


class HttpSmsBackend(HttpBackend):
    """Generic form-encoded SMS gateway (apikey / partnerID / shortcode)."""

    name = "HTTP SMS"
    channel = Channel.SMS

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        api_key: str,
        *,
        partner_id: Optional[str] = None,
        shortcode: Optional[str] = None,
        pass_type: str = "plain",
    ) -> None:
        super().__init__(client)
        self._url = url
        self._api_key = api_key
        self._partner_id = partner_id or ""
        self._shortcode = shortcode or ""
        self._pass_type = pass_type

    async def send(self, destination: str, content: RenderedContent) -> None:
        mobile = normalize_msisdn(destination)
        response = await self._post(
            self._url,
            data={
                "apikey": self._api_key,
                "partnerID": self._partner_id,
                "shortcode": self._shortcode,
                "pass_type": self._pass_type,
                "mobile": mobile,
                "message": sms_text(content),
            },
        )
        logger.info(
            "[SMS] ✓ Sent to %s (normalized=%s), provider response: %s",
            destination, mobile, response.text[:200],
        )


class TwilioBackend(HttpBackend):
    name = "Twilio"
    channel = Channel.SMS

    def __init__(
        self, client: httpx.AsyncClient, account_sid: str, auth_token: str, from_number: str,
    ) -> None:
        super().__init__(client)
        self._sid = account_sid
        self._token = auth_token
        self._from = from_number

    async def send(self, destination: str, content: RenderedContent) -> None:
        response = await self._post(
            TWILIO_URL.format(sid=self._sid),
            data={"To": destination, "From": self._from, "Body": sms_text(content)},
            auth=(self._sid, self._token),
        )
        logger.info(
            "[SMS] ✓ Twilio sent to %s, SID: %s",
            destination, self._json_body(response).get("sid"),
        )


class NexmoBackend(HttpBackend):
    name = "Nexmo/Vonage"
    channel = Channel.SMS

    def __init__(
        self, client: httpx.AsyncClient, api_key: str, api_secret: str, from_name: str,
    ) -> None:
        super().__init__(client)
        self._api_key = api_key
        self._api_secret = api_secret
        self._from = from_name

    async def send(self, destination: str, content: RenderedContent) -> None:
        response = await self._post(
            NEXMO_URL,
            data={
                "api_key": self._api_key,
                "api_secret": self._api_secret,
                "to": destination,
                "from": self._from,
                "text": sms_text(content),
            },
        )
        # Nexmo answers 200 even on rejection; the real status is per message
        messages = self._json_body(response).get("messages") or [{}]
        first = messages[0]
        if first.get("status") != "0":
            raise BackendDeliveryError(self.name, str(first.get("error-text", "rejected")))
        logger.info(
            "[SMS] ✓ Nexmo sent to %s, MessageId: %s",
            destination, first.get("message-id"),
        )


class AfricasTalkingBackend(HttpBackend):
    name = "Africa's Talking"
    channel = Channel.SMS

    def __init__(
        self, client: httpx.AsyncClient, api_key: str, username: str, url: str,
    ) -> None:
        super().__init__(client)
        self._api_key = api_key
        self._username = username
        self._url = url

    async def send(self, destination: str, content: RenderedContent) -> None:
        phone = "+" + normalize_msisdn(destination)
        response = await self._post(
            self._url,
            json={
                "username": self._username,
                "message": sms_text(content),
                "phoneNumbers": [phone],
            },
            headers={"Accept": "application/json", "apiKey": self._api_key},
        )
        recipients = (
            self._json_body(response).get("SMSMessageData", {}).get("Recipients") or []
        )
        logger.info(
            "[SMS] ✓ Africa's Talking sent to %s, Recipients: %d",
            destination, len(recipients),
        )


class ClickatellBackend(HttpBackend):
    name = "Clickatell"
    channel = Channel.SMS

    def __init__(self, client: httpx.AsyncClient, api_key: str) -> None:
        super().__init__(client)
        self._api_key = api_key

    async def send(self, destination: str, content: RenderedContent) -> None:
        await self._post(
            CLICKATELL_URL,
            json={"content": sms_text(content), "to": [destination.lstrip("+")]},
            headers={"Authorization": self._api_key},
        )
        logger.info("[SMS] ✓ Clickatell sent to %s", destination)
