"""Periodic removal of expired and revoked refresh tokens."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from refresh_rotation.config import get_settings
from refresh_rotation.models.refresh_token import utcnow
from refresh_rotation.services.token_store import TokenStore

logger = logging.getLogger(__name__)


class CleanupSweeper:
    """
    Background task deleting tokens that are expired or revoked.

    Each pass opens its own session. A failed pass is logged and the loop goes
    on; only cancellation stops it.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        interval_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if session_factory is None:
            from refresh_rotation.db.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        if interval_seconds is None:
            interval_seconds = get_settings().cleanup_interval_seconds

        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """
        Run a single cleanup pass.

        Returns:
            Number of tokens deleted
        """
        async with self.session_factory() as db:
            store = TokenStore(db)
            candidates = await store.find_cleanup_candidates(now=self.clock())
            if not candidates:
                logger.debug("Token cleanup found nothing to remove")
                return 0
            deleted = await store.delete_many(candidates)

        logger.info(f"Token cleanup completed: {deleted} expired or revoked refresh tokens removed")
        return deleted

    async def _run(self) -> None:
        # First pass at startup, then one per interval
        try:
            while True:
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("Error in token cleanup task")
                    # Continue running despite errors
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("Token cleanup task cancelled")

    def start(self) -> None:
        """Start the periodic cleanup task if it is not already running."""
        if not self.running:
            self._task = asyncio.create_task(self._run())
            logger.debug(f"Started token cleanup task (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Cancel the cleanup task and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped token cleanup task")
