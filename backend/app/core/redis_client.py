"""
Redis connection layer — lazily created async client for the retry store.

Provides:
    • One process-wide ``redis.asyncio`` client built from REDIS_URL
    • Connection probe for startup / health checks
    • Clean shutdown

Usage:
    from backend.app.core.redis_client import get_redis, close_redis

    client = get_redis()
    await client.ping()
"""

from __future__ import annotations

import logging
import re
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from backend.app.core.config import settings
from backend.app.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

_redis_client: Optional[aioredis.Redis] = None


def mask_url(url: str) -> str:
    """Hide the password part of a redis:// URL for logging."""
    return re.sub(r":[^:@/]*@", ":****@", url)


def get_redis() -> aioredis.Redis:
    """Get or create the async Redis client (connections open on first use)."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
        )
        logger.info("Redis client created: %s", mask_url(settings.REDIS_URL))
    return _redis_client


async def connect_redis() -> aioredis.Redis:
    """Create the client and verify the server answers PING."""
    client = get_redis()
    try:
        await client.ping()
    except RedisError as exc:
        logger.error("Failed to connect to Redis at %s: %s", mask_url(settings.REDIS_URL), exc)
        raise StoreUnavailableError("connect", str(exc)) from exc
    logger.info("Redis connected successfully")
    return client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
