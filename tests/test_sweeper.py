"""
Tests for the cleanup sweeper.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from refresh_rotation.models.refresh_token import utcnow
from refresh_rotation.services.sweeper import CleanupSweeper
from refresh_rotation.services.token_issuer import TokenIssuer
from refresh_rotation.services.token_store import TokenStore


class TestRunOnce:
    """Tests for a single cleanup pass."""

    @pytest.mark.asyncio
    async def test_removes_expired_and_revoked_only(self, session_factory, settings):
        now = utcnow()
        async with session_factory() as db:
            store = TokenStore(db)
            active = await TokenIssuer(store, settings=settings).issue("user-1")
            revoked = await TokenIssuer(store, settings=settings).issue("user-1")
            expired = await TokenIssuer(
                store, settings=settings, clock=lambda: now - timedelta(days=30)
            ).issue("user-1")
            stored = await store.find_by_value(revoked.refresh_token)
            await store.revoke_if_active(stored.id)
            await db.commit()

        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=60)
        assert await sweeper.run_once() == 2

        async with session_factory() as db:
            store = TokenStore(db)
            assert await store.find_by_value(active.refresh_token) is not None
            assert await store.find_by_value(revoked.refresh_token) is None
            assert await store.find_by_value(expired.refresh_token) is None

    @pytest.mark.asyncio
    async def test_nothing_to_remove(self, session_factory, settings):
        async with session_factory() as db:
            await TokenIssuer(TokenStore(db), settings=settings).issue("user-1")

        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=60)
        assert await sweeper.run_once() == 0

    @pytest.mark.asyncio
    async def test_uses_injected_clock(self, session_factory, settings):
        async with session_factory() as db:
            await TokenIssuer(TokenStore(db), settings=settings).issue("user-1")

        later = utcnow() + timedelta(days=8)
        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=60, clock=lambda: later)
        assert await sweeper.run_once() == 1

    @pytest.mark.asyncio
    async def test_replaced_token_removed_before_child(self, session_factory, settings):
        """Deleting a rotated parent leaves its replacement intact."""
        from refresh_rotation.services.rotation import RotationEngine

        async with session_factory() as db:
            store = TokenStore(db)
            first = await TokenIssuer(store, settings=settings).issue("user-1")
            second = await RotationEngine(store, settings=settings).rotate(
                first.refresh_token, first.access_token
            )

        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=60)
        assert await sweeper.run_once() == 1

        async with session_factory() as db:
            child = await TokenStore(db).find_by_value(second.refresh_token)
            assert child is not None
            assert child.parent_id is None


class TestBackgroundTask:
    """Tests for start/stop of the periodic task."""

    @pytest.mark.asyncio
    async def test_loop_runs_periodically(self, session_factory):
        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=0.01)
        with patch.object(sweeper, "run_once", AsyncMock(return_value=0)) as run_once:
            sweeper.start()
            await asyncio.sleep(0.1)
            await sweeper.stop()

        assert run_once.await_count >= 2
        assert not sweeper.running

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_loop(self, session_factory):
        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=0.01)
        failing = AsyncMock(side_effect=[RuntimeError("db down")] + [0] * 100)
        with patch.object(sweeper, "run_once", failing):
            sweeper.start()
            await asyncio.sleep(0.1)
            assert sweeper.running
            await sweeper.stop()

        assert failing.await_count >= 2

    @pytest.mark.asyncio
    async def test_first_pass_runs_at_start(self, session_factory):
        """A restart does not wait a whole interval before sweeping."""
        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=3600)
        with patch.object(sweeper, "run_once", AsyncMock(return_value=0)) as run_once:
            sweeper.start()
            await asyncio.sleep(0.05)
            assert run_once.await_count == 1
            await sweeper.stop()

    @pytest.mark.asyncio
    async def test_start_twice_keeps_one_task(self, session_factory):
        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=3600)
        with patch.object(sweeper, "run_once", AsyncMock(return_value=0)):
            sweeper.start()
            task = sweeper._task
            sweeper.start()
            assert sweeper._task is task
            await sweeper.stop()
        assert task.done()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, session_factory):
        sweeper = CleanupSweeper(session_factory=session_factory, interval_seconds=60)
        await sweeper.stop()
        assert not sweeper.running
