from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authbase.clock import Clock, SystemClock
from authbase.config import Settings, get_settings, reset_settings_cache
from authbase.logging import get_logger
from authbase.service.audit import SecurityEventRecorder
from authbase.service.authenticator import CredentialAuthenticator
from authbase.service.lockout import LockoutPolicy
from authbase.service.passwords import PasswordHasher
from authbase.service.permissions import PermissionResolver
from authbase.service.refresh_tokens import RefreshTokenStore
from authbase.service.revocation import RevocationConfig, RevocationStore
from authbase.service.sessions import SessionManager
from authbase.service.sweeper import TokenSweeper
from authbase.service.tokens import TokenCodec, TokenConfig
from authbase.storage.memory import MemoryCache, MemoryStore
from authbase.storage.postgres import PostgresStore
from authbase.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def lockout_policy_from(settings: Settings) -> LockoutPolicy:
    return LockoutPolicy(
        threshold=settings.lockout_threshold,
        duration=timedelta(minutes=settings.lockout_minutes),
    )


def token_config_from(settings: Settings) -> TokenConfig:
    return TokenConfig(
        secret=settings.jwt_secret,
        ttl=timedelta(minutes=settings.access_token_ttl_minutes),
        issuer=settings.jwt_issuer,
    )


def revocation_config_from(settings: Settings) -> RevocationConfig:
    return RevocationConfig(
        enabled=settings.redis_enabled,
        buffer_seconds=settings.revocation_buffer_seconds,
        timeout_seconds=settings.redis_timeout_seconds,
        on_unavailable=settings.revocation_on_unavailable,
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app and scripts."""

    def __init__(self, settings: Settings | None = None, clock: Clock | None = None):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.hasher = PasswordHasher()
        self.codec = TokenCodec(token_config_from(self.settings), clock=self.clock)
        self.audit = SecurityEventRecorder(self.store, clock=self.clock)
        self.permissions = PermissionResolver()
        self.refresh_tokens = RefreshTokenStore(
            self.store,
            ttl=timedelta(days=self.settings.refresh_token_ttl_days),
            clock=self.clock,
            on_unavailable=self.settings.refresh_on_unavailable,
        )
        self.revocation = RevocationStore(
            self.cache, revocation_config_from(self.settings), clock=self.clock
        )
        self.authenticator = CredentialAuthenticator(
            self.store,
            self.hasher,
            lockout_policy_from(self.settings),
            self.audit,
            clock=self.clock,
        )
        self.sessions = SessionManager(
            self.store,
            self.authenticator,
            self.codec,
            self.refresh_tokens,
            self.revocation,
            self.permissions,
            self.audit,
            clock=self.clock,
        )
        self.sweeper = TokenSweeper(
            self.sessions,
            self.audit,
            interval_seconds=self.settings.sweep_interval_seconds,
            event_retention=timedelta(days=self.settings.security_event_retention_days),
        )

        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__ if self.cache else None,
            revocation_policy=self.settings.revocation_on_unavailable.value,
            lockout_threshold=self.settings.lockout_threshold,
        )

    def _build_cache(self):
        if not self.settings.redis_enabled:
            logger.warning(
                "revocation_disabled",
                message="REDIS_ENABLED=false; access tokens cannot be revoked before expiry",
            )
            return None

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to per-test event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for access-token revocation; start Redis, set "
                "REDIS_ENABLED=false, or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                "for a single-process in-memory blacklist."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; the access-token "
                "blacklist is in-memory and not shared across instances."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(clock=self.clock)

    async def close(self) -> None:
        await self.sweeper.stop()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
