"""
base.py — The one capability every delivery backend shares: send().

Backends differ in transport (JSON REST, form-encoded REST, SMTP) but the
orchestrator only ever sees:

    await backend.send(destination, content)   # returns None or raises
                                               # BackendDeliveryError
"""

from __future__ import annotations

import abc
import logging
import re
from typing import Any, Dict, Optional

import httpx

from backend.app.core.errors import BackendDeliveryError
from backend.app.notifications.models import Channel, RenderedContent

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


def strip_html(content: str) -> str:
    """Plain-text version of an HTML body (tags removed, &nbsp; → space)."""
    return _TAG_RE.sub("", content).replace("&nbsp;", " ").strip()


class DeliveryBackend(abc.ABC):
    """A concrete delivery implementation for one channel via one service."""

    name: str = "backend"
    channel: Channel

    @abc.abstractmethod
    async def send(self, destination: str, content: RenderedContent) -> None:
        """Deliver content to destination or raise BackendDeliveryError."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class HttpBackend(DeliveryBackend):
    """
    Base for REST providers sharing one httpx.AsyncClient.

    The client is owned by whoever builds the chain and closed on shutdown.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def _post(
        self,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth | tuple] = None,
    ) -> httpx.Response:
        """POST and turn any transport error or non-2xx status into BackendDeliveryError."""
        try:
            response = await self._client.post(
                url, json=json, data=data, headers=headers, auth=auth,
            )
        except httpx.HTTPError as exc:
            raise BackendDeliveryError(self.name, f"request failed: {exc}") from exc

        if response.is_error:
            raise BackendDeliveryError(
                self.name,
                f"{response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
