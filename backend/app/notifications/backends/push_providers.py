"""
push_providers.py — Push notification delivery backends.

Push content is the JSON payload rendered at intake
({"title", "body", "data"}); backends wrap it in their own envelope.

    FCM       legacy HTTP API, "key=<server key>" Authorization header
    Webhook   POST the payload as-is to a configured URL (optional bearer token)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from backend.app.core.errors import BackendDeliveryError
from backend.app.notifications.backends.base import HttpBackend
from backend.app.notifications.models import Channel, RenderedContent

logger = logging.getLogger(__name__)

FCM_URL = "https://fcm.googleapis.com/fcm/send"


def push_payload(content: RenderedContent) -> Dict[str, Any]:
    if content.push_payload:
        return dict(content.push_payload)
    return {"title": content.subject or "", "body": content.plain_text, "data": {}}


class FcmBackend(HttpBackend):
    name = "FCM"
    channel = Channel.PUSH

    def __init__(self, client: httpx.AsyncClient, server_key: str) -> None:
        super().__init__(client)
        self._server_key = server_key

    async def send(self, destination: str, content: RenderedContent) -> None:
        payload = push_payload(content)
        response = await self._post(
            FCM_URL,
            json={
                "to": destination,
                "notification": {
                    "title": payload.get("title", ""),
                    "body": payload.get("body", ""),
                },
                "data": payload.get("data") or {},
            },
            headers={"Authorization": f"key={self._server_key}"},
        )
        body = self._json_body(response)
        if body.get("failure"):
            results = body.get("results") or [{}]
            raise BackendDeliveryError(self.name, str(results[0].get("error", "rejected")))
        logger.info("[PUSH] ✓ FCM sent to %s…", destination[:12])


class WebhookPushBackend(HttpBackend):
    name = "Push Webhook"
    channel = Channel.PUSH

    def __init__(
        self, client: httpx.AsyncClient, url: str, token: Optional[str] = None,
    ) -> None:
        super().__init__(client)
        self._url = url
        self._token = token

    async def send(self, destination: str, content: RenderedContent) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        await self._post(
            self._url,
            json={"device_token": destination, "notification": push_payload(content)},
            headers=headers,
        )
        logger.info("[PUSH] ✓ Webhook accepted push for %s…", destination[:12])
