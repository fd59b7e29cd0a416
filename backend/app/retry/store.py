"""
store.py — Redis-backed retry store.

Key layout (both keys share one TTL):

    retry:<notification_id>      JSON RetryRecord
    attempts:<notification_id>   integer attempt counter

═══════════════════════════════════════════════════════════════════════════
AGE BANDS
═══════════════════════════════════════════════════════════════════════════

Bands are computed from ``created_at`` on every read; nothing about a
record's band is persisted.

    Band      Age window (reference policy)
    ───────   ─────────────────────────────
    first     [2, 3) min
    second    [4, 5) min
    cleanup   ≥ 5 min

Key TTL = retention (300s) + grace (60s). The grace keeps a record
visible to the cleanup tick after it crosses the cleanup mark, so an
undelivered record is reported before Redis drops it. The TTL itself is
the backstop when no scheduler is running.

All Redis failures surface as StoreUnavailableError.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from backend.app.core.config import Settings
from backend.app.core.errors import StoreUnavailableError
from backend.app.notifications.models import RetryBand, RetryRecord

logger = logging.getLogger(__name__)

RECORD_PREFIX = "retry:"
ATTEMPTS_PREFIX = "attempts:"
SCAN_COUNT = 200

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def record_key(notification_id: str) -> str:
    return f"{RECORD_PREFIX}{notification_id}"


def attempts_key(notification_id: str) -> str:
    return f"{ATTEMPTS_PREFIX}{notification_id}"


@contextmanager
def _store_errors(operation: str, **details: Any) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error("Retry store %s failed: %s", operation, exc, extra=details or None)
        raise StoreUnavailableError(operation, str(exc), **details) from exc


# ═══════════════════════════════════════════════════════════════════════════
# Policy & Stats
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    """Retention and band marks, in the units operators configure them."""
    retention_seconds: int = 300
    expiry_grace_seconds: int = 60
    first_mark_minutes: float = 2.0
    second_mark_minutes: float = 4.0
    cleanup_mark_minutes: float = 5.0
    band_width_minutes: float = 1.0

    @classmethod
    def from_settings(cls, cfg: Settings) -> "RetryPolicy":
        return cls(
            retention_seconds=cfg.RETRY_RETENTION_SECONDS,
            expiry_grace_seconds=cfg.RETRY_EXPIRY_GRACE_SECONDS,
            first_mark_minutes=cfg.RETRY_FIRST_MARK_MINUTES,
            second_mark_minutes=cfg.RETRY_SECOND_MARK_MINUTES,
            cleanup_mark_minutes=cfg.RETRY_CLEANUP_MARK_MINUTES,
            band_width_minutes=cfg.RETRY_BAND_WIDTH_MINUTES,
        )

    @property
    def key_ttl_seconds(self) -> int:
        return self.retention_seconds + self.expiry_grace_seconds

    def band_for_age(self, age_seconds: float) -> Optional[RetryBand]:
        """Band for a record of the given age, or None between windows."""
        minutes = age_seconds / 60.0
        if minutes >= self.cleanup_mark_minutes:
            return RetryBand.CLEANUP
        if self.second_mark_minutes <= minutes < self.second_mark_minutes + self.band_width_minutes:
            return RetryBand.SECOND
        if self.first_mark_minutes <= minutes < self.first_mark_minutes + self.band_width_minutes:
            return RetryBand.FIRST
        return None


@dataclass
class RetryStats:
    """Read-only aggregate for dashboards; never used for control flow."""
    total: int = 0
    due_at_first_mark: int = 0
    due_at_second_mark: int = 0
    due_for_cleanup: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "due_at_first_mark": self.due_at_first_mark,
            "due_at_second_mark": self.due_at_second_mark,
            "due_for_cleanup": self.due_for_cleanup,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Retry Store
# ═══════════════════════════════════════════════════════════════════════════

class RetryStore:
    """
    Durable per-notification retry state.

    Parameters
    ----------
    client : redis.asyncio.Redis
        Must be created with ``decode_responses=True``.
    policy : RetryPolicy
    clock : callable, optional
        Returns the current tz-aware UTC time. Injected by tests.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._redis = client
        self.policy = policy or RetryPolicy()
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    # ── Writes ──

    async def put(self, record: RetryRecord, failure_reason: Optional[str] = None) -> RetryRecord:
        """
        Store a record and reset its attempt counter to 1.

        Overwrites any previous record with the same id (no merge).
        """
        stored = replace(
            record,
            attempt_count=1,
            failure_reason=failure_reason if failure_reason is not None else record.failure_reason,
        )
        ttl = self.policy.key_ttl_seconds
        nid = stored.notification_id

        with _store_errors("put", notification_id=nid):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(record_key(nid), json.dumps(stored.to_dict(), default=str), ex=ttl)
                pipe.set(attempts_key(nid), 1, ex=ttl)
                await pipe.execute()

        logger.info(
            "Notification %s added to retry queue (ttl=%ds, first retry at %.0f min)",
            nid, ttl, self.policy.first_mark_minutes,
            extra={
                "notification_id": nid,
                "user_id": stored.user_id,
                "channel": stored.channel.value,
                "attempt_count": 1,
            },
        )
        return stored

    async def increment_attempt(self, notification_id: str) -> Optional[int]:
        """
        Atomically bump the attempt counter and refresh its TTL.

        Returns None (and writes nothing) when the record is already gone,
        so a removed record is never resurrected by a late retry. The record
        key is WATCHed: a remove landing between the existence check and
        EXEC aborts the transaction and the check runs again.
        """
        rkey = record_key(notification_id)
        akey = attempts_key(notification_id)
        with _store_errors("increment_attempt", notification_id=notification_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(rkey)
                        if not await pipe.exists(rkey):
                            await pipe.unwatch()
                            return None
                        pipe.multi()
                        pipe.incr(akey)
                        pipe.expire(akey, self.policy.key_ttl_seconds)
                        count, _ = await pipe.execute()
                        return int(count)
                    except WatchError:
                        logger.debug(
                            "Record %s changed during increment; re-checking", notification_id,
                            extra={"notification_id": notification_id},
                        )

    async def record_failure(self, notification_id: str, reason: str) -> bool:
        """
        Overwrite the stored failure reason, keeping the key's TTL.

        Writes only if the record still exists (SET XX), so a record removed
        mid-retry stays removed. Returns True when the write landed.
        """
        rkey = record_key(notification_id)
        with _store_errors("record_failure", notification_id=notification_id):
            raw = await self._redis.get(rkey)
            if raw is None:
                return False
            data = json.loads(raw)
            data["failure_reason"] = reason
            written = await self._redis.set(
                rkey, json.dumps(data, default=str), xx=True, keepttl=True,
            )
        return bool(written)

    async def remove(self, notification_id: str) -> bool:
        """
        Delete record and counter. Idempotent.

        Returns True only if the record key existed, which lets exactly one
        of several racing callers claim the removal.
        """
        with _store_errors("remove", notification_id=notification_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(record_key(notification_id))
                pipe.delete(attempts_key(notification_id))
                removed_record, _ = await pipe.execute()

        if removed_record:
            logger.info(
                "Notification %s removed from retry queue", notification_id,
                extra={"notification_id": notification_id},
            )
        return bool(removed_record)

    # ── Reads ──

    def _decode(self, raw: Optional[str], counter: Optional[str]) -> Optional[RetryRecord]:
        if raw is None:
            return None
        try:
            record = RetryRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Skipping undecodable retry record: %s", exc)
            return None
        if counter is not None:
            record.attempt_count = int(counter)
        return record

    async def get(self, notification_id: str) -> Optional[RetryRecord]:
        with _store_errors("get", notification_id=notification_id):
            raw, counter = await self._redis.mget(
                [record_key(notification_id), attempts_key(notification_id)],
            )
        return self._decode(raw, counter)

    async def get_attempt_count(self, notification_id: str) -> int:
        with _store_errors("get_attempt_count", notification_id=notification_id):
            count = await self._redis.get(attempts_key(notification_id))
        return int(count) if count else 0

    async def list_all(self) -> List[RetryRecord]:
        """
        Every stored record, unordered.

        Keys that expire or are removed between SCAN and MGET are skipped.
        """
        with _store_errors("list_all"):
            keys = [key async for key in self._redis.scan_iter(
                match=f"{RECORD_PREFIX}*", count=SCAN_COUNT,
            )]
            if not keys:
                return []
            ids = [key[len(RECORD_PREFIX):] for key in keys]
            raws = await self._redis.mget(keys)
            counters = await self._redis.mget([attempts_key(i) for i in ids])

        records: List[RetryRecord] = []
        for raw, counter in zip(raws, counters):
            record = self._decode(raw, counter)
            if record is not None:
                records.append(record)
        return records

    # ── Bands ──

    def band_for(self, record: RetryRecord, now: Optional[datetime] = None) -> Optional[RetryBand]:
        return self.policy.band_for_age(record.age_seconds(now or self.now()))

    async def items_in_band(self, band: RetryBand) -> List[RetryRecord]:
        now = self.now()
        return [r for r in await self.list_all() if self.band_for(r, now) == band]

    async def stats(self) -> RetryStats:
        now = self.now()
        records = await self.list_all()
        stats = RetryStats(total=len(records))
        for record in records:
            band = self.band_for(record, now)
            if band == RetryBand.FIRST:
                stats.due_at_first_mark += 1
            elif band == RetryBand.SECOND:
                stats.due_at_second_mark += 1
            elif band == RetryBand.CLEANUP:
                stats.due_for_cleanup += 1
        return stats
