from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from authbase.clock import Clock, SystemClock
from authbase.logging import get_logger
from authbase.service import lockout
from authbase.service.audit import SecurityEventRecorder
from authbase.service.errors import (
    AccountDisabled,
    AccountLocked,
    InvalidCredentials,
    ServiceUnavailableError,
)
from authbase.service.lockout import LockoutPolicy, LockoutState
from authbase.service.passwords import PasswordHasher
from authbase.storage.errors import StoreUnavailable
from authbase.storage.models import Principal, SecurityEventType

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoginContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class CredentialAuthenticator:
    """Password verification guarded by the lockout state machine.

    The credential store is fail-closed: if it cannot be reached the attempt
    is aborted with ServiceUnavailableError rather than treated as a failure.
    """

    def __init__(
        self,
        store,
        hasher: PasswordHasher,
        policy: LockoutPolicy,
        audit: SecurityEventRecorder,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.policy = policy
        self.audit = audit
        self.clock = clock or SystemClock()

    def authenticate(
        self, email: str, password: str, context: LoginContext | None = None
    ) -> Principal:
        """Return the refreshed principal on success.

        Raises InvalidCredentials, AccountLocked or AccountDisabled.
        """
        context = context or LoginContext()
        try:
            return self._authenticate(email, password, context)
        except StoreUnavailable as exc:
            logger.error("credential_store_unavailable", error=str(exc))
            raise ServiceUnavailableError("credential store unavailable") from exc

    def _authenticate(self, email: str, password: str, context: LoginContext) -> Principal:
        now = self.clock.now()
        principal = self.store.get_principal_by_email(email)
        if principal is None:
            # Same hashing cost as a real mismatch; nothing to count against
            self.hasher.verify_decoy(password)
            self._record(
                SecurityEventType.LOGIN_FAILURE,
                "Login attempt with unknown email",
                None,
                context,
            )
            raise InvalidCredentials()

        state = lockout.evaluate(principal, now)
        if state == LockoutState.LOCKED:
            self._record(
                SecurityEventType.LOGIN_FAILURE,
                "Login attempt on locked account",
                principal.id,
                context,
                details={"locked_until": principal.locked_until.isoformat()},
            )
            raise AccountLocked(locked_until=principal.locked_until)

        if state == LockoutState.LOCK_EXPIRED_PENDING_CLEAR:
            if self.store.clear_expired_lockout(principal.id, now):
                self._record(
                    SecurityEventType.ACCOUNT_UNLOCKED,
                    "Lockout expired; failed attempt counter cleared",
                    principal.id,
                    context,
                    success=True,
                )
            principal = self.store.get_principal(principal.id) or principal
            state = lockout.evaluate(principal, now)

        if not self.hasher.verify(principal.password_hash, password):
            self._register_failure(principal, context)

        if state == LockoutState.DISABLED:
            self._record(
                SecurityEventType.ACCOUNT_DISABLED,
                "Login attempt on disabled account",
                principal.id,
                context,
            )
            raise AccountDisabled()

        self.store.record_successful_login(principal.id, now)
        self._record(
            SecurityEventType.LOGIN_SUCCESS,
            "User logged in successfully",
            principal.id,
            context,
            success=True,
        )
        return self.store.get_principal(principal.id) or principal

    def _register_failure(self, principal: Principal, context: LoginContext) -> None:
        now = self.clock.now()
        result = self.store.record_failed_login(
            principal.id,
            now=now,
            threshold=self.policy.threshold,
            lock_duration=self.policy.duration,
        )
        self._record(
            SecurityEventType.LOGIN_FAILURE,
            f"Failed login attempt #{result.failed_login_attempts}",
            principal.id,
            context,
            details={"failed_login_attempts": result.failed_login_attempts},
        )
        if result.lock_triggered:
            self._record(
                SecurityEventType.ACCOUNT_LOCKED,
                f"Account locked after {result.failed_login_attempts} failed login attempts",
                principal.id,
                context,
                details={"locked_until": result.locked_until.isoformat()},
            )
            raise AccountLocked(locked_until=result.locked_until)
        raise InvalidCredentials()

    def _record(
        self,
        event_type: SecurityEventType,
        description: str,
        principal_id: Optional[str],
        context: LoginContext,
        *,
        success: bool = False,
        details: dict | None = None,
    ) -> None:
        self.audit.record(
            event_type,
            description,
            principal_id=principal_id,
            success=success,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            details=details,
        )
