from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from authbase.clock import Clock, SystemClock
from authbase.logging import get_logger
from authbase.storage.models import SecurityEvent, SecurityEventType

logger = get_logger(__name__)


class SecurityEventRecorder:
    """Writes and queries the security audit trail.

    Recording is best-effort: a failing audit store is logged and never
    propagated into the authentication path.
    """

    def __init__(self, store, clock: Clock | None = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def record(
        self,
        event_type: SecurityEventType,
        description: str,
        *,
        principal_id: Optional[str] = None,
        success: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Dict[str, Any] | None = None,
    ) -> Optional[SecurityEvent]:
        event = SecurityEvent.new(
            event_type,
            description,
            principal_id=principal_id,
            success=success,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
            created_at=self.clock.now(),
        )
        try:
            self.store.add_security_event(event)
        except Exception as exc:
            logger.warning(
                "security_event_record_failed",
                event_type=event_type.value,
                principal_id=principal_id,
                error=str(exc),
            )
            return None
        log_fn = logger.info if success else logger.warning
        log_fn(
            "security_event",
            event_type=event_type.value,
            principal_id=principal_id,
            ip_address=ip_address,
            description=description,
        )
        return event

    def events_for_principal(self, principal_id: str, limit: int = 100) -> List[SecurityEvent]:
        return self.store.list_security_events(principal_id=principal_id, limit=limit)

    def events_by_type(self, event_type: SecurityEventType, limit: int = 100) -> List[SecurityEvent]:
        return self.store.list_security_events(event_type=event_type, limit=limit)

    def count_failed_logins(
        self, principal_id: str, since: datetime, until: Optional[datetime] = None
    ) -> int:
        return self.store.count_failed_logins(principal_id, since, until or self.clock.now())

    def failed_logins_from_ip(
        self, ip_address: str, window: timedelta = timedelta(hours=1)
    ) -> List[SecurityEvent]:
        """Recent unsuccessful events from one address, newest first."""
        return self.store.list_failed_logins_from_ip(ip_address, self.clock.now() - window)

    def purge_before(self, cutoff: datetime) -> int:
        removed = self.store.delete_security_events_before(cutoff)
        if removed:
            logger.info("security_events_purged", removed=removed, cutoff=cutoff.isoformat())
        return removed
