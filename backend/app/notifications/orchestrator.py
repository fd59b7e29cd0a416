"""
orchestrator.py — Ordered fallback delivery through a provider chain.

    deliver(channel, destination, content)
        │
        ├─ chain empty ─────────────▶ mock delivery (logged, no backend touched)
        │
        └─ for backend in chain (strict order):
               send() bounded by BACKEND_SEND_TIMEOUT_SECONDS
               ├─ ok      ─▶ return DeliveryResult       (later backends untouched)
               └─ error   ─▶ AttemptEvent(failure), next backend
           all failed     ─▶ ChainExhaustedError(last error wins)

The orchestrator holds no per-notification state, so concurrent deliver()
calls are independent. Retries over time are the retry scheduler's job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Mapping, Optional

from backend.app.core.errors import BackendDeliveryError, ChainExhaustedError
from backend.app.notifications.chain import ProviderChain
from backend.app.notifications.events import AttemptEvent, EventSink, LoggingEventSink
from backend.app.notifications.models import Channel, DeliveryResult, RenderedContent

logger = logging.getLogger(__name__)

MOCK_PROVIDER = "mock"


class DeliveryOrchestrator:
    """Walks each channel's provider chain until one backend accepts."""

    def __init__(
        self,
        chains: Mapping[Channel, ProviderChain],
        event_sink: Optional[EventSink] = None,
        send_timeout: Optional[float] = 15.0,
    ) -> None:
        self._chains: Dict[Channel, ProviderChain] = dict(chains)
        self._events: EventSink = event_sink or LoggingEventSink()
        self._send_timeout = send_timeout

    def chain_for(self, channel: Channel) -> ProviderChain:
        return self._chains.get(channel) or ProviderChain(channel=channel)

    def providers(self, channel: Optional[Channel] = None) -> Dict[str, List[str]]:
        """Chain names per channel (or for one channel)."""
        channels = [channel] if channel else list(Channel)
        return {c.value: self.chain_for(c).names for c in channels}

    async def _send_one(self, backend, destination: str, content: RenderedContent) -> None:
        try:
            if self._send_timeout:
                await asyncio.wait_for(
                    backend.send(destination, content), timeout=self._send_timeout,
                )
            else:
                await backend.send(destination, content)
        except BackendDeliveryError:
            raise
        except asyncio.TimeoutError as exc:
            raise BackendDeliveryError(
                backend.name, f"timed out after {self._send_timeout:.1f}s",
            ) from exc
        except Exception as exc:  # noqa: BLE001 - provider faults never escape the chain
            raise BackendDeliveryError(
                backend.name, f"{type(exc).__name__}: {exc}",
            ) from exc

    async def deliver(
        self,
        channel: Channel,
        destination: str,
        content: RenderedContent,
        notification_id: Optional[str] = None,
    ) -> DeliveryResult:
        """
        Deliver through the channel's chain.

        Returns
        -------
        DeliveryResult
            The first backend that succeeded, or provider "mock" for an
            empty chain.

        Raises
        ------
        ChainExhaustedError
            Every backend failed; carries the last backend error.
        """
        channel = Channel(channel)
        chain = self.chain_for(channel)
        tag = channel.value.upper()

        if chain.is_mock:
            logger.info(
                "[%s] Mock → %s (no providers configured) | %s",
                tag, destination, content.subject or content.plain_text[:60],
                extra={
                    "notification_id": notification_id,
                    "channel": channel.value,
                    "destination": destination,
                    "provider": MOCK_PROVIDER,
                    "outcome": "mock",
                },
            )
            return DeliveryResult(
                channel=channel,
                destination=destination,
                provider=MOCK_PROVIDER,
                mock=True,
            )

        attempted: List[str] = []
        last_error: Optional[BackendDeliveryError] = None
        size = len(chain)

        for index, backend in enumerate(chain, start=1):
            attempted.append(backend.name)
            logger.debug(
                "[%s] Attempting send via %s (%d/%d)", tag, backend.name, index, size,
            )
            started = time.perf_counter()
            try:
                await self._send_one(backend, destination, content)
            except BackendDeliveryError as exc:
                last_error = exc
                self._events.emit(AttemptEvent(
                    channel=channel.value,
                    destination=destination,
                    provider=backend.name,
                    attempt=index,
                    chain_size=size,
                    success=False,
                    error=exc.message,
                    notification_id=notification_id,
                ))
                continue

            logger.debug(
                "[%s] %s accepted in %.1fms",
                tag, backend.name, (time.perf_counter() - started) * 1000,
            )
            self._events.emit(AttemptEvent(
                channel=channel.value,
                destination=destination,
                provider=backend.name,
                attempt=index,
                chain_size=size,
                success=True,
                notification_id=notification_id,
            ))
            return DeliveryResult(
                channel=channel,
                destination=destination,
                provider=backend.name,
                attempted_providers=attempted,
            )

        raise ChainExhaustedError(channel.value, attempted, last_error)
