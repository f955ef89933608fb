"""Brute-force lockout states for a principal.

    ACTIVE --(threshold-th failure)--> LOCKED
    LOCKED --(locked_until passes)--> LOCK_EXPIRED_PENDING_CLEAR
    LOCK_EXPIRED_PENDING_CLEAR --(counters cleared on next attempt)--> ACTIVE

DISABLED overrides ACTIVE only; a locked principal reports LOCKED whether or
not it is enabled, so a disabled account never reveals its enablement while
locked.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from authbase.storage.models import Principal


class LockoutState(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    LOCK_EXPIRED_PENDING_CLEAR = "lock_expired_pending_clear"
    DISABLED = "disabled"


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    duration: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        if self.duration <= timedelta(0):
            raise ValueError("lockout duration must be positive")


def is_locked(principal: Principal, now: datetime) -> bool:
    return principal.locked_until is not None and now < principal.locked_until


def lock_expired(principal: Principal, now: datetime) -> bool:
    return principal.locked_until is not None and now >= principal.locked_until


def evaluate(principal: Principal, now: datetime) -> LockoutState:
    if is_locked(principal, now):
        return LockoutState.LOCKED
    if lock_expired(principal, now):
        return LockoutState.LOCK_EXPIRED_PENDING_CLEAR
    if not principal.enabled:
        return LockoutState.DISABLED
    return LockoutState.ACTIVE
