import asyncio
from datetime import timedelta

from authbase.service.sweeper import TokenSweeper
from authbase.storage.models import SecurityEventType


class TestRunOnce:
    def test_removes_expired_tokens_and_old_events(
        self, sessions, audit, refresh_tokens, principal, clock
    ):
        audit.record(SecurityEventType.LOGIN_FAILURE, "old", principal_id=principal.id)
        refresh_tokens.issue(principal)
        clock.advance(days=91)
        live = refresh_tokens.issue(principal)
        audit.record(SecurityEventType.LOGIN_SUCCESS, "new", principal_id=principal.id, success=True)

        result = TokenSweeper(sessions, audit).run_once()

        assert result == {"refresh_tokens": 1, "security_events": 1}
        assert refresh_tokens.lookup(live) is not None

    def test_nothing_to_do(self, sessions, audit):
        assert TokenSweeper(sessions, audit).run_once() == {
            "refresh_tokens": 0,
            "security_events": 0,
        }

    def test_custom_retention(self, sessions, audit, clock):
        audit.record(SecurityEventType.LOGOUT, "bye")
        clock.advance(days=2)

        sweeper = TokenSweeper(sessions, audit, event_retention=timedelta(days=1))

        assert sweeper.run_once()["security_events"] == 1


class TestLifecycle:
    async def test_zero_interval_never_starts(self, sessions, audit):
        sweeper = TokenSweeper(sessions, audit, interval_seconds=0)

        await sweeper.start()

        assert sweeper.running is False
        await sweeper.stop()

    async def test_start_runs_sweep_then_stop(self, sessions, audit, refresh_tokens, principal, clock):
        refresh_tokens.issue(principal)
        clock.advance(days=8)
        sweeper = TokenSweeper(sessions, audit, interval_seconds=60)

        await sweeper.start()
        assert sweeper.running is True
        for _ in range(50):
            if not refresh_tokens.store.refresh_tokens:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert sweeper.running is False
        assert refresh_tokens.store.refresh_tokens == {}
