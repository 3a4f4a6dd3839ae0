"""Background sweeper for expired authentication state.

Periodically removes expired sessions, expired revocation records and
expired password reset tokens.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict, Optional

from podauth.logging import get_logger

if TYPE_CHECKING:
    from podauth.service.credentials import CredentialService
    from podauth.service.sessions import SessionManager
    from podauth.service.tokens import TokenManager

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60 * 60
MAX_BACKOFF_SECONDS = 300


class CleanupWorker:
    def __init__(
        self,
        sessions: "SessionManager",
        tokens: "TokenManager",
        credentials: Optional["CredentialService"] = None,
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.tokens = tokens
        self.credentials = credentials
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("cleanup_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleanup_worker_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("cleanup_worker_stopped")

    def _backoff_seconds(self, consecutive_errors: int) -> float:
        """Delay after repeated failures; never shorter than a healthy interval."""
        grown = min(MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3)))
        return max(self.interval, grown)

    async def run_once(self) -> Dict[str, int]:
        """Run one sweep and return how many records each step removed."""
        removed = {
            "sessions": await self.sessions.cleanup_expired(),
            "revocations": await self.tokens.cleanup_expired_revocations(),
            "reset_tokens": 0,
        }
        if self.credentials is not None:
            removed["reset_tokens"] = self.credentials.cleanup_expired_reset_tokens()
        logger.info("cleanup_sweep_completed", **removed)
        return removed

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "cleanup_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = self._backoff_seconds(consecutive_errors)
                    logger.warning(
                        "cleanup_worker_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval)
