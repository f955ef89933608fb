from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Set, Union

from authbase.clock import Clock, SystemClock
from authbase.logging import get_logger
from authbase.service.audit import SecurityEventRecorder
from authbase.service.authenticator import CredentialAuthenticator, LoginContext
from authbase.service.errors import (
    AccountDisabled,
    ExpiredRefreshToken,
    InvalidRefreshToken,
    ServiceUnavailableError,
    TokenError,
    TokenRevoked,
)
from authbase.service.permissions import PermissionResolver
from authbase.service.refresh_tokens import RefreshTokenStore
from authbase.service.revocation import RevocationStore
from authbase.service.tokens import Claims, TokenCodec
from authbase.storage.errors import StoreUnavailable
from authbase.storage.models import Principal, SecurityEventType

logger = get_logger(__name__)


@dataclass(frozen=True)
class PrincipalView:
    """Principal fields safe to hand back to callers (no hash, no counters)."""

    id: str
    email: str
    roles: List[str]
    enabled: bool
    email_verified: bool
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalView":
        return cls(
            id=principal.id,
            email=principal.email,
            roles=sorted(principal.role_names),
            enabled=principal.enabled,
            email_verified=principal.email_verified,
            last_login_at=principal.last_login_at,
        )


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    principal: PrincipalView
    expires_in: int
    token_type: str = "Bearer"


class SessionManager:
    """Login, refresh, logout and forced logout over the auth components.

    Per session: Anonymous -> Authenticated -> LoggedOut. Refresh keeps the
    same refresh token and mints a new access token from the principal's
    current roles. Forced logout deletes refresh tokens only; access tokens
    already handed out stay valid until they expire.
    """

    def __init__(
        self,
        store,
        authenticator: CredentialAuthenticator,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenStore,
        revocation: RevocationStore,
        permissions: PermissionResolver,
        audit: SecurityEventRecorder,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.authenticator = authenticator
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.revocation = revocation
        self.permissions = permissions
        self.audit = audit
        self.clock = clock or SystemClock()

    def _load_principal(self, principal_id: str) -> Optional[Principal]:
        try:
            return self.store.get_principal(principal_id)
        except StoreUnavailable as exc:
            logger.error("credential_store_unavailable", error=str(exc))
            raise ServiceUnavailableError("credential store unavailable") from exc

    def _access_ttl_seconds(self) -> int:
        return int(self.codec.config.ttl.total_seconds())

    async def authenticate(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        principal = self.authenticator.authenticate(
            email, password, LoginContext(ip_address=ip_address, user_agent=user_agent)
        )
        access_token = self.codec.issue(principal)
        refresh_token = self.refresh_tokens.issue(principal)
        logger.info("login_succeeded", principal_id=principal.id)
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            principal=PrincipalView.from_principal(principal),
            expires_in=self._access_ttl_seconds(),
        )

    async def refresh(self, refresh_token: str) -> AuthResult:
        record = self.refresh_tokens.lookup(refresh_token)
        if record is None:
            self.audit.record(SecurityEventType.TOKEN_INVALID, "Unknown refresh token presented")
            raise InvalidRefreshToken()

        if record.is_expired(self.clock.now()):
            self.refresh_tokens.delete(refresh_token)
            self.audit.record(
                SecurityEventType.TOKEN_INVALID,
                "Expired refresh token presented",
                principal_id=record.principal_id,
            )
            raise ExpiredRefreshToken()

        principal = self._load_principal(record.principal_id)
        if principal is None:
            self.refresh_tokens.delete(refresh_token)
            raise InvalidRefreshToken()
        if not principal.enabled:
            self.audit.record(
                SecurityEventType.ACCOUNT_DISABLED,
                "Refresh attempt on disabled account",
                principal_id=principal.id,
            )
            raise AccountDisabled()

        access_token = self.codec.issue(principal)
        self.audit.record(
            SecurityEventType.TOKEN_REFRESH,
            "Access token refreshed",
            principal_id=principal.id,
            success=True,
        )
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            principal=PrincipalView.from_principal(principal),
            expires_in=self._access_ttl_seconds(),
        )

    async def logout(self, refresh_token: str, access_token: Optional[str] = None) -> bool:
        """Blacklist ``access_token`` (if given) and delete the refresh token.

        Returns whether a refresh token row was removed; a second logout with
        the same token returns False.
        """
        principal_id: Optional[str] = None
        if access_token:
            try:
                claims = self.codec.verify(access_token, verify_expiry=False)
            except TokenError as exc:
                logger.warning("logout_access_token_unusable", reason=exc.message)
            else:
                principal_id = claims.principal_id
                await self.revocation.blacklist(access_token, claims.expires_at_ms)

        record = self.refresh_tokens.lookup(refresh_token) if refresh_token else None
        deleted = self.refresh_tokens.delete(refresh_token) if refresh_token else False
        if deleted:
            self.audit.record(
                SecurityEventType.LOGOUT,
                "User logged out",
                principal_id=record.principal_id if record else principal_id,
                success=True,
            )
        else:
            logger.info("logout_refresh_token_not_found")
        return deleted

    async def force_logout_all(self, principal_id: str) -> int:
        removed = self.refresh_tokens.delete_all_for_principal(principal_id)
        self.audit.record(
            SecurityEventType.FORCE_LOGOUT,
            f"All sessions terminated ({removed} refresh tokens removed)",
            principal_id=principal_id,
            success=True,
            details={"removed": removed},
        )
        return removed

    async def is_revoked(self, access_token: str) -> bool:
        return await self.revocation.is_blacklisted(access_token)

    def verify_access_token(self, access_token: str) -> Claims:
        return self.codec.verify(access_token)

    async def authorize(self, access_token: str) -> Claims:
        """Revocation check first, then signature and expiry."""
        if await self.is_revoked(access_token):
            raise TokenRevoked()
        return self.verify_access_token(access_token)

    def resolve_permissions(self, principal: Union[Principal, str]) -> Set[str]:
        resolved = self._resolve_principal(principal)
        return self.permissions.resolve(resolved) if resolved else set()

    def has_permission(self, principal: Union[Principal, str], permission_name: str) -> bool:
        """Passing an id re-reads the principal so role changes apply immediately."""
        resolved = self._resolve_principal(principal)
        return bool(resolved) and self.permissions.has_permission(resolved, permission_name)

    def _resolve_principal(self, principal: Union[Principal, str]) -> Optional[Principal]:
        if isinstance(principal, Principal):
            return principal
        return self._load_principal(principal)

    def validate_refresh_token(self, refresh_token: str) -> bool:
        record = self.refresh_tokens.lookup(refresh_token)
        return record is not None and not record.is_expired(self.clock.now())

    def principal_for_refresh_token(self, refresh_token: str) -> Optional[Principal]:
        record = self.refresh_tokens.lookup(refresh_token)
        if record is None or record.is_expired(self.clock.now()):
            return None
        return self._load_principal(record.principal_id)

    def active_session_count(self, principal_id: str) -> int:
        return self.refresh_tokens.count_active(principal_id)

    def cleanup_expired_tokens(self) -> int:
        removed = self.refresh_tokens.delete_expired(self.clock.now())
        if removed:
            logger.info("expired_refresh_tokens_removed", removed=removed)
        return removed
