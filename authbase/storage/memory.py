from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from authbase.clock import Clock, SystemClock
from authbase.logging import get_logger
from authbase.storage.errors import ConstraintViolation
from authbase.storage.models import (
    LoginFailure,
    Permission,
    Principal,
    RefreshToken,
    Role,
    SecurityEvent,
    SecurityEventType,
)


class MemoryStore:
    """In-process credential, role, refresh-token and audit store.

    Every read-modify-write runs under ``_data_lock`` so concurrent requests
    against the same principal cannot lose lockout counter updates.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self._email_index: Dict[str, str] = {}
        self.principal_roles: Dict[str, set[str]] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()

    # -- principals -----------------------------------------------------

    def _materialize(self, principal: Principal) -> Principal:
        role_names = sorted(self.principal_roles.get(principal.id, set()))
        roles = [
            replace(self.roles[name], permissions=list(self.roles[name].permissions))
            for name in role_names
            if name in self.roles
        ]
        return replace(principal, roles=roles)

    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        enabled: bool = True,
        email_verified: bool = False,
        roles: Iterable[str] = (),
    ) -> Principal:
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                enabled=enabled,
                email_verified=email_verified,
            )
            self.principals[principal.id] = principal
            self._email_index[normalized] = principal.id
            self.principal_roles[principal.id] = set()
            for role_name in roles:
                self.assign_role(principal.id, role_name)
            return self._materialize(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return self._materialize(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._email_index.get(email.strip().lower())
            if not principal_id:
                return None
            return self._materialize(self.principals[principal_id])

    def set_principal_enabled(self, principal_id: str, enabled: bool) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            principal.enabled = enabled
            return self._materialize(principal)

    def record_failed_login(
        self,
        principal_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> LoginFailure:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise KeyError(principal_id)
            principal.failed_login_attempts += 1
            principal.last_failed_login_at = now
            triggered = False
            if principal.failed_login_attempts >= threshold and principal.locked_until is None:
                principal.locked_until = now + lock_duration
                triggered = True
            return LoginFailure(
                failed_login_attempts=principal.failed_login_attempts,
                locked_until=principal.locked_until,
                lock_triggered=triggered,
            )

    def clear_expired_lockout(self, principal_id: str, now: datetime) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.locked_until is None:
                return False
            if principal.locked_until > now:
                return False
            principal.failed_login_attempts = 0
            principal.locked_until = None
            return True

    def record_successful_login(self, principal_id: str, now: datetime) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise KeyError(principal_id)
            principal.failed_login_attempts = 0
            principal.locked_until = None
            principal.last_login_at = now

    # -- roles and permissions ------------------------------------------

    def _get_or_create_permission(self, name: str) -> Permission:
        perm = self.permissions.get(name)
        if not perm:
            perm = Permission(id=str(uuid.uuid4()), name=name)
            self.permissions[name] = perm
        return perm

    def create_role(
        self,
        name: str,
        description: Optional[str] = None,
        permissions: Iterable[str] = (),
    ) -> Role:
        with self._data_lock:
            if name in self.roles:
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                permissions=[self._get_or_create_permission(p) for p in dict.fromkeys(permissions)],
            )
            self.roles[name] = role
            return replace(role, permissions=list(role.permissions))

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            return replace(role, permissions=list(role.permissions)) if role else None

    def grant_permission(self, role_name: str, permission_name: str) -> Role:
        with self._data_lock:
            role = self.roles.get(role_name)
            if not role:
                raise KeyError(role_name)
            if permission_name not in role.permission_names:
                role.permissions.append(self._get_or_create_permission(permission_name))
            return replace(role, permissions=list(role.permissions))

    def assign_role(self, principal_id: str, role_name: str) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise KeyError(principal_id)
            if role_name not in self.roles:
                raise ConstraintViolation("role not found", {"field": "role"})
            self.principal_roles.setdefault(principal_id, set()).add(role_name)

    def revoke_role(self, principal_id: str, role_name: str) -> None:
        with self._data_lock:
            self.principal_roles.get(principal_id, set()).discard(role_name)

    # -- refresh tokens -------------------------------------------------

    def add_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[record.token_hash] = record
            return replace(record)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_hash, None) is not None

    def delete_refresh_tokens_for_principal(self, principal_id: str) -> int:
        with self._data_lock:
            doomed = [
                key for key, record in self.refresh_tokens.items()
                if record.principal_id == principal_id
            ]
            for key in doomed:
                del self.refresh_tokens[key]
            return len(doomed)

    def delete_refresh_tokens_expired(self, before: datetime) -> int:
        with self._data_lock:
            doomed = [
                key for key, record in self.refresh_tokens.items()
                if record.expires_at < before
            ]
            for key in doomed:
                del self.refresh_tokens[key]
            return len(doomed)

    def count_active_refresh_tokens(self, principal_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1 for record in self.refresh_tokens.values()
                if record.principal_id == principal_id and record.expires_at >= now
            )

    # -- security events ------------------------------------------------

    def add_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.security_events.append(event)
            return event

    def list_security_events(
        self,
        *,
        principal_id: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            events = [
                e for e in self.security_events
                if (principal_id is None or e.principal_id == principal_id)
                and (event_type is None or e.event_type == event_type)
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]

    def count_failed_logins(self, principal_id: str, since: datetime, until: datetime) -> int:
        with self._data_lock:
            return sum(
                1 for e in self.security_events
                if e.principal_id == principal_id
                and e.event_type == SecurityEventType.LOGIN_FAILURE
                and since <= e.created_at <= until
            )

    def list_failed_logins_from_ip(self, ip_address: str, since: datetime) -> List[SecurityEvent]:
        with self._data_lock:
            events = [
                e for e in self.security_events
                if e.ip_address == ip_address
                and not e.success
                and e.created_at >= since
            ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events

    def delete_security_events_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.security_events if e.created_at >= cutoff]
            removed = len(self.security_events) - len(kept)
            self.security_events = kept
            return removed


class MemoryCache:
    """Single-process stand-in for Redis with per-key TTLs.

    Expiry is evaluated against the injected clock on every read so tests can
    observe entries vanishing without sleeping.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, datetime]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock.now():
            del self._entries[key]
            return None
        return entry

    async def blacklist_token(self, digest: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[f"auth:access:blacklist:{digest}"] = (
                "blacklisted",
                self.clock.now() + timedelta(seconds=ttl_seconds),
            )

    async def is_token_blacklisted(self, digest: str) -> bool:
        with self._lock:
            return self._live(f"auth:access:blacklist:{digest}") is not None

    async def blacklist_ttl(self, digest: str) -> Optional[int]:
        with self._lock:
            entry = self._live(f"auth:access:blacklist:{digest}")
            if entry is None:
                return None
            return int((entry[1] - self.clock.now()).total_seconds())

    async def ping(self) -> bool:
        return True

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
