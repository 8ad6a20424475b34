"""Redis client for the webhook idempotency fast path.

A successfully applied webhook body is remembered by its SHA-512 digest so a
redelivery can be acknowledged without touching the ledger. This is only an
optimisation: the ledger's conditional updates stay the source of truth, so
every Redis failure is logged and treated as a cache miss.

Usage:
    from escrow_ledger.infrastructure.redis_client import init_redis, get_redis

    await init_redis()
    cache = RedisIdempotencyCache(get_redis(), ttl_seconds=86400)
    if not await cache.seen(digest):
        ...
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from escrow_ledger.config import get_settings
from escrow_ledger.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None

KEY_PREFIX = "idempotency:webhook:"


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_redis_initialized() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Idempotency Cache ---


class RedisIdempotencyCache:
    """Remembers processed webhook digests with a TTL."""

    def __init__(self, client: aioredis.Redis, ttl_seconds: int) -> None:
        self._client = client
        self._ttl = ttl_seconds

    async def seen(self, digest: str) -> bool:
        """True if this digest was recorded as applied. Errors count as a miss."""
        try:
            return bool(await self._client.exists(f"{KEY_PREFIX}{digest}"))
        except RedisError as exc:
            logger.warning("redis.idempotency_check_failed", error=str(exc))
            return False

    async def remember(self, digest: str) -> None:
        try:
            await self._client.set(f"{KEY_PREFIX}{digest}", "1", ex=self._ttl)
        except RedisError as exc:
            logger.warning("redis.idempotency_store_failed", error=str(exc))
