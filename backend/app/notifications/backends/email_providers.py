"""
email_providers.py — Email delivery backends.

    Provider   Transport                          Credentials
    ────────   ─────────────────────────────────  ──────────────────────────
    SendGrid   JSON REST, Bearer token            api_key, from
    Mailgun    form-encoded REST, basic auth      api_key, domain, from
    Postmark   JSON REST, server token header     server_token, from
    SMTP       smtplib (STARTTLS / SSL on 465)    host, username, password
    Gmail      SMTP preset smtp.gmail.com:465     from, app_password

SMTP sends are blocking; they run on a worker thread via asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from typing import Tuple

import httpx

from backend.app.core.errors import BackendDeliveryError
from backend.app.notifications.backends.base import DeliveryBackend, HttpBackend, strip_html
from backend.app.notifications.models import Channel, RenderedContent

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
MAILGUN_URL = "https://api.mailgun.net/v3/{domain}/messages"
POSTMARK_URL = "https://api.postmarkapp.com/email"
GMAIL_SMTP_HOST = "smtp.gmail.com"
GMAIL_SMTP_PORT = 465


def _parts(content: RenderedContent) -> Tuple[str, str, str]:
    """(subject, plain text, html) with fallbacks when a part is missing."""
    html = content.html or ""
    text = content.text or strip_html(html)
    subject = content.subject or "Notification"
    return subject, text, html or text


class SendGridBackend(HttpBackend):
    name = "SendGrid"
    channel = Channel.EMAIL

    def __init__(self, client: httpx.AsyncClient, api_key: str, from_email: str) -> None:
        super().__init__(client)
        self._api_key = api_key
        self._from = from_email

    async def send(self, destination: str, content: RenderedContent) -> None:
        subject, text, html = _parts(content)
        await self._post(
            SENDGRID_URL,
            json={
                "personalizations": [{"to": [{"email": destination}]}],
                "from": {"email": self._from},
                "subject": subject,
                "content": [
                    {"type": "text/plain", "value": text},
                    {"type": "text/html", "value": html},
                ],
            },
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        logger.info("[EMAIL] ✓ SendGrid sent to %s", destination)


class MailgunBackend(HttpBackend):
    name = "Mailgun"
    channel = Channel.EMAIL

    def __init__(
        self, client: httpx.AsyncClient, api_key: str, domain: str, from_email: str,
    ) -> None:
        super().__init__(client)
        self._api_key = api_key
        self._domain = domain
        self._from = from_email

    async def send(self, destination: str, content: RenderedContent) -> None:
        subject, text, html = _parts(content)
        response = await self._post(
            MAILGUN_URL.format(domain=self._domain),
            data={
                "from": self._from,
                "to": destination,
                "subject": subject,
                "text": text,
                "html": html,
            },
            auth=("api", self._api_key),
        )
        logger.info(
            "[EMAIL] ✓ Mailgun sent to %s, ID: %s",
            destination, self._json_body(response).get("id"),
        )


class PostmarkBackend(HttpBackend):
    name = "Postmark"
    channel = Channel.EMAIL

    def __init__(self, client: httpx.AsyncClient, server_token: str, from_email: str) -> None:
        super().__init__(client)
        self._token = server_token
        self._from = from_email

    async def send(self, destination: str, content: RenderedContent) -> None:
        subject, text, html = _parts(content)
        response = await self._post(
            POSTMARK_URL,
            json={
                "From": self._from,
                "To": destination,
                "Subject": subject,
                "TextBody": text,
                "HtmlBody": html,
            },
            headers={
                "Accept": "application/json",
                "X-Postmark-Server-Token": self._token,
            },
        )
        logger.info(
            "[EMAIL] ✓ Postmark sent to %s, MessageID: %s",
            destination, self._json_body(response).get("MessageID"),
        )


class SmtpBackend(DeliveryBackend):
    """Plain SMTP relay. Port 465 uses implicit TLS, anything else STARTTLS."""

    name = "SMTP"
    channel = Channel.EMAIL

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_email: str,
        *,
        timeout_seconds: float = 20.0,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from = from_email
        self._timeout = timeout_seconds

    def _build_message(self, destination: str, content: RenderedContent) -> EmailMessage:
        subject, text, html = _parts(content)
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = destination
        msg.set_content(text)
        if content.html:
            msg.add_alternative(html, subtype="html")
        return msg

    def _send_blocking(self, msg: EmailMessage) -> None:
        if self._port == 465:
            with smtplib.SMTP_SSL(self._host, self._port, timeout=self._timeout) as server:
                server.login(self._username, self._password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                server.starttls()
                server.login(self._username, self._password)
                server.send_message(msg)

    async def send(self, destination: str, content: RenderedContent) -> None:
        msg = self._build_message(destination, content)
        try:
            await asyncio.to_thread(self._send_blocking, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise BackendDeliveryError(self.name, str(exc), host=self._host) from exc
        logger.info("[EMAIL] ✓ %s sent to %s via %s", self.name, destination, self._host)


class GmailBackend(SmtpBackend):
    name = "Gmail"

    def __init__(self, from_email: str, app_password: str, *, timeout_seconds: float = 20.0) -> None:
        super().__init__(
            GMAIL_SMTP_HOST,
            GMAIL_SMTP_PORT,
            from_email,
            app_password,
            from_email,
            timeout_seconds=timeout_seconds,
        )
