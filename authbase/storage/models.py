from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Permission:
    id: str
    name: str


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[Permission] = field(default_factory=list)

    @property
    def permission_names(self) -> set[str]:
        return {perm.name for perm in self.permissions}


@dataclass
class Principal:
    """A user account as seen by the auth core.

    Lockout counters are owned by the credential authenticator; ``last_login_at``
    by the session manager. Roles are loaded eagerly with their permissions.
    """

    id: str
    email: str
    password_hash: str
    enabled: bool = True
    email_verified: bool = False
    roles: List[Role] = field(default_factory=list)
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_login_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def role_names(self) -> List[str]:
        return [role.name for role in self.roles]


@dataclass(frozen=True)
class LoginFailure:
    """Counter state returned by the atomic failed-login update."""

    failed_login_attempts: int
    locked_until: Optional[datetime]
    lock_triggered: bool


@dataclass
class RefreshToken:
    token_hash: str
    principal_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class SecurityEventType(str, Enum):
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    FORCE_LOGOUT = "FORCE_LOGOUT"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    TOKEN_INVALID = "TOKEN_INVALID"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"


@dataclass
class SecurityEvent:
    id: str
    event_type: SecurityEventType
    principal_id: Optional[str]
    description: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        event_type: SecurityEventType,
        description: str,
        *,
        principal_id: Optional[str] = None,
        success: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Dict | None = None,
        created_at: Optional[datetime] = None,
    ) -> "SecurityEvent":
        return cls(
            id=str(uuid.uuid4()),
            event_type=event_type,
            principal_id=principal_id,
            description=description,
            success=success,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
            created_at=created_at or _utcnow(),
        )
