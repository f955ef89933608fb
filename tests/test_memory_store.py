import threading
from datetime import datetime, timedelta, timezone

import pytest

from authbase.storage.errors import ConstraintViolation
from authbase.storage.memory import MemoryStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    s = MemoryStore()
    s.create_role("USER", "Regular user", ["profile:read"])
    return s


class TestPrincipals:
    def test_duplicate_email_rejected_case_insensitively(self, store):
        store.create_principal("alice@example.com", "hash")

        with pytest.raises(ConstraintViolation):
            store.create_principal("ALICE@example.com", "hash")

    def test_unknown_role_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_principal("alice@example.com", "hash", roles=["NOPE"])

    def test_reads_return_copies(self, store):
        created = store.create_principal("alice@example.com", "hash", roles=["USER"])

        created.enabled = False
        created.roles[0].permissions.clear()

        fresh = store.get_principal(created.id)
        assert fresh.enabled is True
        assert fresh.roles[0].permission_names == {"profile:read"}

    def test_role_revocation_visible_on_next_read(self, store):
        created = store.create_principal("alice@example.com", "hash", roles=["USER"])

        store.revoke_role(created.id, "USER")

        assert store.get_principal(created.id).roles == []

    def test_granted_permission_visible_through_principal(self, store):
        created = store.create_principal("alice@example.com", "hash", roles=["USER"])

        store.grant_permission("USER", "profile:write")

        assert store.get_principal(created.id).roles[0].permission_names == {
            "profile:read",
            "profile:write",
        }


class TestLockoutCounters:
    def test_lock_set_once_at_threshold(self, store):
        p = store.create_principal("alice@example.com", "hash")
        results = [
            store.record_failed_login(
                p.id, now=NOW, threshold=3, lock_duration=timedelta(minutes=15)
            )
            for _ in range(4)
        ]

        assert [r.failed_login_attempts for r in results] == [1, 2, 3, 4]
        assert [r.lock_triggered for r in results] == [False, False, True, False]
        assert results[-1].locked_until == NOW + timedelta(minutes=15)

    def test_concurrent_failures_are_not_lost(self, store):
        p = store.create_principal("alice@example.com", "hash")
        results = []
        results_lock = threading.Lock()
        start = threading.Barrier(50)

        def fail_once():
            start.wait()
            result = store.record_failed_login(
                p.id, now=NOW, threshold=5, lock_duration=timedelta(minutes=15)
            )
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=fail_once) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get_principal(p.id).failed_login_attempts == 50
        assert sum(1 for r in results if r.lock_triggered) == 1

    def test_missing_principal(self, store):
        with pytest.raises(KeyError):
            store.record_failed_login(
                "missing", now=NOW, threshold=5, lock_duration=timedelta(minutes=15)
            )

    def test_clear_expired_lockout_only_after_expiry(self, store):
        p = store.create_principal("alice@example.com", "hash")
        for _ in range(5):
            store.record_failed_login(p.id, now=NOW, threshold=5, lock_duration=timedelta(minutes=15))

        assert store.clear_expired_lockout(p.id, NOW + timedelta(minutes=14)) is False
        assert store.clear_expired_lockout(p.id, NOW + timedelta(minutes=15)) is True

        cleared = store.get_principal(p.id)
        assert cleared.failed_login_attempts == 0
        assert cleared.locked_until is None
        assert store.clear_expired_lockout(p.id, NOW + timedelta(minutes=16)) is False

    def test_successful_login_resets(self, store):
        p = store.create_principal("alice@example.com", "hash")
        store.record_failed_login(p.id, now=NOW, threshold=5, lock_duration=timedelta(minutes=15))

        store.record_successful_login(p.id, NOW + timedelta(minutes=1))

        fresh = store.get_principal(p.id)
        assert fresh.failed_login_attempts == 0
        assert fresh.last_login_at == NOW + timedelta(minutes=1)
        assert fresh.last_failed_login_at == NOW


class TestMemoryCache:
    async def test_entries_expire_with_clock(self, revocation_cache, clock):
        await revocation_cache.blacklist_token("d1", 60)

        assert await revocation_cache.is_token_blacklisted("d1") is True
        assert await revocation_cache.blacklist_ttl("d1") == 60

        clock.advance(seconds=60)

        assert await revocation_cache.is_token_blacklisted("d1") is False
        assert await revocation_cache.blacklist_ttl("d1") is None

    async def test_zero_ttl_not_stored(self, revocation_cache):
        await revocation_cache.blacklist_token("d1", 0)

        assert revocation_cache._entries == {}

    async def test_close_clears(self, revocation_cache):
        await revocation_cache.blacklist_token("d1", 60)

        await revocation_cache.close()

        assert await revocation_cache.is_token_blacklisted("d1") is False
