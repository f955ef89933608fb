from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

_BLACKLIST_PREFIX = "auth:access:blacklist:"
_BLACKLIST_MARKER = "blacklisted"


def _blacklist_key(digest: str) -> str:
    return f"{_BLACKLIST_PREFIX}{digest}"


class RedisCache:
    """Thin Redis wrapper holding the access-token blacklist."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def blacklist_token(self, digest: str, ttl_seconds: int) -> None:
        """Write the blacklist marker; Redis removes it when the TTL lapses."""
        if ttl_seconds > 0:
            await self.client.set(_blacklist_key(digest), _BLACKLIST_MARKER, ex=ttl_seconds)

    async def is_token_blacklisted(self, digest: str) -> bool:
        return bool(await self.client.exists(_blacklist_key(digest)))

    async def blacklist_ttl(self, digest: str) -> Optional[int]:
        ttl = await self.client.ttl(_blacklist_key(digest))
        return ttl if ttl is not None and ttl >= 0 else None

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client behind the same awaitable API as RedisCache.

    Used in test mode so the client is never bound to a per-test event loop.
    """

    DEFAULT_OPERATION_TIMEOUT = 2.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def blacklist_token(self, digest: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(_blacklist_key(digest), _BLACKLIST_MARKER, ex=ttl_seconds)

    async def is_token_blacklisted(self, digest: str) -> bool:
        return bool(self._sync_client.exists(_blacklist_key(digest)))

    async def blacklist_ttl(self, digest: str) -> Optional[int]:
        ttl = self._sync_client.ttl(_blacklist_key(digest))
        return ttl if ttl is not None and ttl >= 0 else None

    async def ping(self) -> bool:
        return bool(self._sync_client.ping())

    async def close(self) -> None:
        self._sync_client.close()
