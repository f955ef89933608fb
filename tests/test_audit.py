from datetime import timedelta

from authbase.service.audit import SecurityEventRecorder
from authbase.storage.models import SecurityEventType


def record_failure(audit, principal_id=None, ip="203.0.113.9"):
    return audit.record(
        SecurityEventType.LOGIN_FAILURE,
        "Failed login attempt",
        principal_id=principal_id,
        ip_address=ip,
    )


class TestRecording:
    def test_record_returns_stored_event(self, audit, memory_store, clock):
        event = audit.record(
            SecurityEventType.LOGIN_SUCCESS,
            "User logged in",
            principal_id="p1",
            success=True,
            user_agent="curl/8",
            details={"method": "password"},
        )

        assert event.created_at == clock.now()
        assert event.success is True
        assert memory_store.security_events == [event]

    def test_failing_store_is_swallowed(self, clock):
        class _Broken:
            def add_security_event(self, event):
                raise ConnectionError("db gone")

        recorder = SecurityEventRecorder(_Broken(), clock=clock)

        assert recorder.record(SecurityEventType.LOGOUT, "User logged out") is None


class TestQueries:
    def test_events_for_principal_newest_first(self, audit, clock):
        record_failure(audit, "p1")
        clock.advance(seconds=1)
        audit.record(SecurityEventType.LOGIN_SUCCESS, "ok", principal_id="p1", success=True)
        clock.advance(seconds=1)
        record_failure(audit, "p2")

        events = audit.events_for_principal("p1")

        assert [e.event_type for e in events] == [
            SecurityEventType.LOGIN_SUCCESS,
            SecurityEventType.LOGIN_FAILURE,
        ]
        assert len(audit.events_for_principal("p1", limit=1)) == 1

    def test_events_by_type(self, audit):
        record_failure(audit, "p1")
        audit.record(SecurityEventType.LOGOUT, "bye", principal_id="p1", success=True)

        assert len(audit.events_by_type(SecurityEventType.LOGOUT)) == 1

    def test_count_failed_logins_in_window(self, audit, clock):
        start = clock.now()
        record_failure(audit, "p1")
        clock.advance(minutes=10)
        record_failure(audit, "p1")
        record_failure(audit, "p2")

        assert audit.count_failed_logins("p1", since=start) == 2
        assert audit.count_failed_logins("p1", since=start + timedelta(minutes=5)) == 1
        assert audit.count_failed_logins("p1", since=start, until=start) == 1

    def test_failed_logins_from_ip(self, audit, clock):
        record_failure(audit, ip="192.0.2.1")
        clock.advance(hours=2)
        record_failure(audit, ip="192.0.2.1")
        record_failure(audit, ip="192.0.2.2")
        audit.record(
            SecurityEventType.LOGIN_SUCCESS, "ok", success=True, ip_address="192.0.2.1"
        )

        recent = audit.failed_logins_from_ip("192.0.2.1")

        assert len(recent) == 1
        assert len(audit.failed_logins_from_ip("192.0.2.1", window=timedelta(hours=3))) == 2

    def test_purge_before(self, audit, memory_store, clock):
        record_failure(audit, "p1")
        clock.advance(days=100)
        record_failure(audit, "p1")

        assert audit.purge_before(clock.now() - timedelta(days=90)) == 1
        assert len(memory_store.security_events) == 1
