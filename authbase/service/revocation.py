from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from typing import Optional

from authbase.clock import Clock, SystemClock, to_epoch_millis
from authbase.config import OnUnavailable
from authbase.logging import get_logger
from authbase.service.errors import ServiceUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RevocationConfig:
    enabled: bool = True
    buffer_seconds: int = 300
    timeout_seconds: float = 2.0
    on_unavailable: OnUnavailable = OnUnavailable.FAIL_OPEN


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationStore:
    """Access-token blacklist over a TTL key/value backend.

    ``backend`` is a RedisCache, SyncRedisCache or MemoryCache (or None when
    revocation is switched off). Every backend call is bounded by
    ``timeout_seconds``; a timeout or error counts as "unavailable" and is
    resolved by ``on_unavailable``.
    """

    def __init__(self, backend, config: RevocationConfig, clock: Clock | None = None) -> None:
        self.backend = backend
        self.config = config
        self.clock = clock or SystemClock()

    @property
    def active(self) -> bool:
        return self.config.enabled and self.backend is not None

    def ttl_for(self, natural_expiry_ms: int) -> int:
        remaining_ms = natural_expiry_ms - to_epoch_millis(self.clock.now())
        return max(self.config.buffer_seconds, math.ceil(remaining_ms / 1000))

    def _unavailable(self, operation: str, error: str, fallback):
        logger.warning(
            "revocation_store_unavailable",
            operation=operation,
            policy=self.config.on_unavailable.value,
            error=error,
        )
        if self.config.on_unavailable == OnUnavailable.FAIL_CLOSED:
            raise ServiceUnavailableError("revocation store unavailable")
        return fallback

    async def blacklist(self, token: str, natural_expiry_ms: int) -> bool:
        """Blacklist ``token`` until shortly after it would expire on its own.

        Returns False when the entry could not be written under FAIL_OPEN.
        """
        if not self.active:
            return self._unavailable("blacklist", "revocation disabled", False)
        ttl = self.ttl_for(natural_expiry_ms)
        try:
            await asyncio.wait_for(
                self.backend.blacklist_token(token_digest(token), ttl),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._unavailable("blacklist", "timeout", False)
        except Exception as exc:
            return self._unavailable("blacklist", str(exc), False)
        logger.info("access_token_blacklisted", ttl_seconds=ttl)
        return True

    async def is_blacklisted(self, token: str) -> bool:
        if not self.active:
            return self._unavailable("is_blacklisted", "revocation disabled", False)
        try:
            return bool(
                await asyncio.wait_for(
                    self.backend.is_token_blacklisted(token_digest(token)),
                    timeout=self.config.timeout_seconds,
                )
            )
        except asyncio.TimeoutError:
            return self._unavailable("is_blacklisted", "timeout", False)
        except Exception as exc:
            return self._unavailable("is_blacklisted", str(exc), False)

    async def remaining_ttl(self, token: str) -> Optional[int]:
        if not self.active:
            return self._unavailable("remaining_ttl", "revocation disabled", None)
        try:
            return await asyncio.wait_for(
                self.backend.blacklist_ttl(token_digest(token)),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._unavailable("remaining_ttl", "timeout", None)
        except Exception as exc:
            return self._unavailable("remaining_ttl", str(exc), None)

    async def is_available(self) -> bool:
        if not self.active:
            return False
        try:
            return bool(
                await asyncio.wait_for(self.backend.ping(), timeout=self.config.timeout_seconds)
            )
        except Exception as exc:
            logger.warning("revocation_health_check_failed", error=str(exc))
            return False
