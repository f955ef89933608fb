from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

from authbase.clock import Clock, SystemClock
from authbase.config import OnUnavailable
from authbase.logging import get_logger
from authbase.service.errors import ServiceUnavailableError
from authbase.storage.errors import StoreUnavailable
from authbase.storage.models import Principal, RefreshToken

logger = get_logger(__name__)

# 256 bits of entropy
_TOKEN_BYTES = 32


def hash_refresh_token(token: str) -> str:
    """Rows are keyed by digest so a leaked table does not leak usable tokens."""
    return hashlib.sha256(token.encode()).hexdigest()


class RefreshTokenStore:
    """Opaque refresh tokens persisted through the backing store.

    With FAIL_CLOSED (the default) an unreachable store aborts the call with
    ServiceUnavailableError. FAIL_OPEN answers "not found"/zero instead,
    which refuses refreshes but lets logout complete.
    """

    def __init__(
        self,
        store,
        ttl: timedelta = timedelta(days=7),
        *,
        clock: Clock | None = None,
        on_unavailable: OnUnavailable = OnUnavailable.FAIL_CLOSED,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self.on_unavailable = on_unavailable

    def _unavailable(self, operation: str, exc: StoreUnavailable, fallback):
        logger.error(
            "refresh_store_unavailable",
            operation=operation,
            policy=self.on_unavailable.value,
            error=str(exc),
        )
        if self.on_unavailable == OnUnavailable.FAIL_CLOSED:
            raise ServiceUnavailableError("refresh token store unavailable") from exc
        return fallback

    def issue(self, principal: Principal) -> str:
        # Issuing has no safe fallback, so it is always fail-closed
        token = secrets.token_urlsafe(_TOKEN_BYTES)
        now = self.clock.now()
        record = RefreshToken(
            token_hash=hash_refresh_token(token),
            principal_id=principal.id,
            expires_at=now + self.ttl,
            created_at=now,
        )
        try:
            self.store.add_refresh_token(record)
        except StoreUnavailable as exc:
            logger.error("refresh_store_unavailable", operation="issue", error=str(exc))
            raise ServiceUnavailableError("refresh token store unavailable") from exc
        return token

    def lookup(self, token: str) -> Optional[RefreshToken]:
        if not token:
            return None
        try:
            return self.store.get_refresh_token(hash_refresh_token(token))
        except StoreUnavailable as exc:
            return self._unavailable("lookup", exc, None)

    def delete(self, token: str) -> bool:
        if not token:
            return False
        try:
            return self.store.delete_refresh_token(hash_refresh_token(token))
        except StoreUnavailable as exc:
            return self._unavailable("delete", exc, False)

    def delete_all_for_principal(self, principal_id: str) -> int:
        try:
            return self.store.delete_refresh_tokens_for_principal(principal_id)
        except StoreUnavailable as exc:
            return self._unavailable("delete_all_for_principal", exc, 0)

    def delete_expired(self, before: Optional[datetime] = None) -> int:
        try:
            return self.store.delete_refresh_tokens_expired(before or self.clock.now())
        except StoreUnavailable as exc:
            return self._unavailable("delete_expired", exc, 0)

    def count_active(self, principal_id: str) -> int:
        try:
            return self.store.count_active_refresh_tokens(principal_id, self.clock.now())
        except StoreUnavailable as exc:
            return self._unavailable("count_active", exc, 0)
