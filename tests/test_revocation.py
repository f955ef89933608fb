"""Tests for the access-token blacklist and its unavailability policy."""

import asyncio
from datetime import timedelta

import pytest

from authbase.clock import to_epoch_millis
from authbase.config import OnUnavailable
from authbase.service.errors import ServiceUnavailableError, TokenExpired
from authbase.service.revocation import RevocationConfig, RevocationStore, token_digest


def expiry_in(clock, **delta) -> int:
    return to_epoch_millis(clock.now() + timedelta(**delta))


class _FailingBackend:
    async def blacklist_token(self, digest, ttl_seconds):
        raise ConnectionError("redis down")

    async def is_token_blacklisted(self, digest):
        raise ConnectionError("redis down")

    async def blacklist_ttl(self, digest):
        raise ConnectionError("redis down")

    async def ping(self):
        raise ConnectionError("redis down")


class _SlowBackend:
    async def blacklist_token(self, digest, ttl_seconds):
        await asyncio.sleep(1)

    async def is_token_blacklisted(self, digest):
        await asyncio.sleep(1)
        return True

    async def blacklist_ttl(self, digest):
        await asyncio.sleep(1)
        return 60

    async def ping(self):
        await asyncio.sleep(1)
        return True


class TestTtl:
    def test_remaining_lifetime_used_when_longer_than_buffer(self, revocation, clock):
        assert revocation.ttl_for(expiry_in(clock, minutes=15)) == 900

    def test_buffer_used_for_nearly_dead_token(self, revocation, clock):
        assert revocation.ttl_for(expiry_in(clock, seconds=10)) == 300

    def test_buffer_used_for_already_expired_token(self, revocation, clock):
        assert revocation.ttl_for(expiry_in(clock, seconds=-60)) == 300

    def test_partial_seconds_round_up(self, revocation, clock):
        assert revocation.ttl_for(to_epoch_millis(clock.now()) + 900_500) == 901


class TestBlacklist:
    async def test_blacklisted_token_reported(self, revocation, clock):
        assert await revocation.is_blacklisted("tok-a") is False

        assert await revocation.blacklist("tok-a", expiry_in(clock, minutes=15)) is True

        assert await revocation.is_blacklisted("tok-a") is True
        assert await revocation.is_blacklisted("tok-b") is False

    async def test_entries_keyed_by_digest(self, revocation, revocation_cache, clock):
        await revocation.blacklist("raw-token-value", expiry_in(clock, minutes=15))

        keys = list(revocation_cache._entries)
        assert keys == [f"auth:access:blacklist:{token_digest('raw-token-value')}"]
        assert "raw-token-value" not in keys[0]

    async def test_entry_lives_until_natural_expiry(self, revocation, clock):
        await revocation.blacklist("tok", expiry_in(clock, minutes=15))

        clock.advance(minutes=14, seconds=59)
        assert await revocation.is_blacklisted("tok") is True

        clock.advance(seconds=1)
        assert await revocation.is_blacklisted("tok") is False

    async def test_short_lived_token_kept_for_buffer(self, revocation, clock):
        await revocation.blacklist("tok", expiry_in(clock, seconds=30))

        clock.advance(seconds=299)
        assert await revocation.is_blacklisted("tok") is True

        clock.advance(seconds=1)
        assert await revocation.is_blacklisted("tok") is False

    async def test_issued_token_revoked_until_exp_plus_buffer(
        self, revocation, codec, principal, clock
    ):
        token = codec.issue(principal)
        claims = codec.verify(token)

        await revocation.blacklist(token, claims.expires_at_ms)
        assert await revocation.is_blacklisted(token) is True

        clock.advance(minutes=15, seconds=301)
        assert await revocation.is_blacklisted(token) is False
        with pytest.raises(TokenExpired):
            codec.verify(token)

    async def test_remaining_ttl(self, revocation, clock):
        await revocation.blacklist("tok", expiry_in(clock, minutes=10))
        clock.advance(minutes=4)

        assert await revocation.remaining_ttl("tok") == 360


class TestUnavailable:
    async def test_disabled_store_fails_open(self, clock):
        store = RevocationStore(None, RevocationConfig(), clock=clock)

        assert store.active is False
        assert await store.blacklist("tok", expiry_in(clock, minutes=15)) is False
        assert await store.is_blacklisted("tok") is False
        assert await store.remaining_ttl("tok") is None
        assert await store.is_available() is False

    async def test_disabled_flag_ignores_backend(self, revocation_cache, clock):
        store = RevocationStore(revocation_cache, RevocationConfig(enabled=False), clock=clock)

        assert await store.blacklist("tok", expiry_in(clock, minutes=15)) is False
        assert revocation_cache._entries == {}

    async def test_backend_errors_fail_open(self, clock):
        store = RevocationStore(_FailingBackend(), RevocationConfig(), clock=clock)

        assert await store.blacklist("tok", expiry_in(clock, minutes=15)) is False
        assert await store.is_blacklisted("tok") is False
        assert await store.remaining_ttl("tok") is None
        assert await store.is_available() is False

    async def test_timeouts_count_as_unavailable(self, clock):
        store = RevocationStore(
            _SlowBackend(), RevocationConfig(timeout_seconds=0.05), clock=clock
        )

        assert await store.is_blacklisted("tok") is False
        assert await store.blacklist("tok", expiry_in(clock, minutes=15)) is False
        assert await store.remaining_ttl("tok") is None

    async def test_fail_closed_raises(self, clock):
        store = RevocationStore(
            _FailingBackend(),
            RevocationConfig(on_unavailable=OnUnavailable.FAIL_CLOSED),
            clock=clock,
        )

        with pytest.raises(ServiceUnavailableError):
            await store.is_blacklisted("tok")
        with pytest.raises(ServiceUnavailableError):
            await store.blacklist("tok", expiry_in(clock, minutes=15))
        with pytest.raises(ServiceUnavailableError):
            await store.remaining_ttl("tok")

    async def test_health_check(self, revocation):
        assert await revocation.is_available() is True
