"""Background sweep of expired refresh tokens and aged security events.

Deletions are single predicate-based statements in the stores, so the sweep
can run alongside live logins, refreshes and logouts.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

from authbase.logging import get_logger
from authbase.service.audit import SecurityEventRecorder
from authbase.service.sessions import SessionManager

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
MAX_BACKOFF_SECONDS = 3600


class TokenSweeper:
    def __init__(
        self,
        sessions: SessionManager,
        audit: SecurityEventRecorder,
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        event_retention: timedelta = timedelta(days=90),
    ) -> None:
        self.sessions = sessions
        self.audit = audit
        self.interval_seconds = interval_seconds
        self.event_retention = event_retention
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info("token_sweeper_disabled")
            return
        if self._running:
            logger.warning("token_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("token_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("token_sweeper_stopped")

    def run_once(self) -> dict:
        """Run one sweep and return how many rows each step removed."""
        tokens_removed = self.sessions.cleanup_expired_tokens()
        cutoff = self.sessions.clock.now() - self.event_retention
        events_removed = self.audit.purge_before(cutoff)
        logger.info(
            "token_sweep_complete",
            refresh_tokens_removed=tokens_removed,
            security_events_removed=events_removed,
        )
        return {"refresh_tokens": tokens_removed, "security_events": events_removed}

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                # Store calls are blocking; keep them off the event loop
                await asyncio.to_thread(self.run_once)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "token_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning("token_sweeper_backoff", backoff_seconds=backoff)
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval_seconds)
