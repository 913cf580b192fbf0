"""Persistence operations over refresh tokens."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from refresh_rotation.errors import StoreIntegrityError, StoreUnavailable
from refresh_rotation.models.refresh_token import RefreshToken, hash_token_value, utcnow

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
DELETE_BATCH_SIZE = 500


class TokenStore:
    """
    Durable store for RefreshToken rows, keyed by token value and by user.

    Every write commits on its own. Inside ``async with store.transaction()``
    writes are only flushed, and the block commits or rolls back as a whole.
    Database failures surface as StoreIntegrityError or StoreUnavailable and
    always leave the session rolled back.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._transaction_depth = 0

    @property
    def in_transaction(self) -> bool:
        return self._transaction_depth > 0

    @asynccontextmanager
    async def transaction(self):
        """Group several store writes into one commit. Nested blocks join the outer one."""
        if self._transaction_depth:
            self._transaction_depth += 1
            try:
                yield self
            finally:
                self._transaction_depth -= 1
            return

        self._transaction_depth = 1
        try:
            yield self
            self._transaction_depth = 0
            await self._persist()
        except BaseException:
            await self._rollback()
            raise
        finally:
            self._transaction_depth = 0

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError:
            logger.exception("Rollback failed after token store error")

    async def _persist(self) -> None:
        try:
            if self.in_transaction:
                await self.db.flush()
            else:
                await self.db.commit()
        except IntegrityError as e:
            await self._rollback()
            raise StoreIntegrityError(f"Refresh token write violated a constraint: {e.orig}") from e
        except SQLAlchemyError as e:
            await self._rollback()
            raise StoreUnavailable(f"Refresh token write failed: {e}") from e

    async def _execute(self, statement):
        try:
            return await self.db.execute(statement)
        except IntegrityError as e:
            await self._rollback()
            raise StoreIntegrityError(f"Refresh token statement violated a constraint: {e.orig}") from e
        except SQLAlchemyError as e:
            await self._rollback()
            raise StoreUnavailable(f"Refresh token store unavailable: {e}") from e

    # === Writes ===

    async def add(self, token: RefreshToken) -> RefreshToken:
        self.db.add(token)
        await self._persist()
        return token

    async def update(self, token: RefreshToken) -> RefreshToken:
        self.db.add(token)
        await self._persist()
        return token

    async def update_many(self, tokens: Iterable[RefreshToken]) -> list[RefreshToken]:
        tokens = list(tokens)
        self.db.add_all(tokens)
        await self._persist()
        return tokens

    async def delete(self, token: RefreshToken) -> None:
        try:
            await self.db.delete(token)
        except SQLAlchemyError as e:
            await self._rollback()
            raise StoreUnavailable(f"Refresh token delete failed: {e}") from e
        await self._persist()

    async def delete_many(self, tokens: Iterable[RefreshToken]) -> int:
        """Delete the given tokens in one commit. Returns the number of rows removed."""
        tokens = [token for token in tokens if token.id is not None]
        if not tokens:
            return 0

        ids = [token.id for token in tokens]
        deleted = 0
        async with self.transaction():
            for start in range(0, len(ids), DELETE_BATCH_SIZE):
                batch = ids[start:start + DELETE_BATCH_SIZE]
                result = await self._execute(
                    delete(RefreshToken)
                    .where(RefreshToken.id.in_(batch))
                    .execution_options(synchronize_session=False)
                )
                deleted += result.rowcount

        for token in tokens:
            if token in self.db:
                self.db.expunge(token)
        return deleted

    async def revoke_if_active(
        self,
        token_id: int,
        now: Optional[datetime] = None,
        reason: str = RefreshToken.REASON_ROTATION,
    ) -> bool:
        """
        Set revoked_at on one token only if it is still unrevoked.

        Compare-and-swap on ``revoked_at IS NULL``: of two racing callers exactly
        one gets True.
        """
        result = await self._execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.id == token_id,
                    RefreshToken.revoked_at.is_(None),
                )
            )
            .values(revoked_at=now or utcnow(), revoke_reason=reason)
            .execution_options(synchronize_session="evaluate")
        )
        await self._persist()
        return result.rowcount == 1

    async def revoke_active_for_user(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        reason: str = RefreshToken.REASON_LOGOUT_ALL,
    ) -> int:
        """
        Revoke every active token of a user.

        The update repeats ``revoked_at IS NULL`` so a token revoked concurrently
        keeps its original timestamp and is not counted twice.
        """
        now = now or utcnow()
        result = await self._execute(
            select(RefreshToken.id).where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > now,
                )
            )
        )
        ids = list(result.scalars().all())
        if not ids:
            return 0

        result = await self._execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.id.in_(ids),
                    RefreshToken.revoked_at.is_(None),
                )
            )
            .values(revoked_at=now, revoke_reason=reason)
            .execution_options(synchronize_session="evaluate")
        )
        await self._persist()
        return result.rowcount

    # === Queries ===

    async def find_by_value(self, token_value: str) -> Optional[RefreshToken]:
        result = await self._execute(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token_value(token_value))
        )
        return result.scalar_one_or_none()

    async def find_by_user(self, user_id: str) -> list[RefreshToken]:
        """All tokens of a user, oldest first."""
        result = await self._execute(
            select(RefreshToken)
            .where(RefreshToken.user_id == user_id)
            .order_by(RefreshToken.created_at, RefreshToken.id)
        )
        return list(result.scalars().all())

    async def find_active_by_user(
        self, user_id: str, now: Optional[datetime] = None
    ) -> list[RefreshToken]:
        result = await self._execute(
            select(RefreshToken)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked_at.is_(None),
                    RefreshToken.expires_at > (now or utcnow()),
                )
            )
            .order_by(RefreshToken.created_at, RefreshToken.id)
        )
        return list(result.scalars().all())

    async def find_expired(self, now: Optional[datetime] = None) -> list[RefreshToken]:
        result = await self._execute(
            select(RefreshToken).where(RefreshToken.expires_at <= (now or utcnow()))
        )
        return list(result.scalars().all())

    async def find_cleanup_candidates(self, now: Optional[datetime] = None) -> list[RefreshToken]:
        """Expired or revoked tokens, the sweeper's input."""
        result = await self._execute(
            select(RefreshToken).where(
                or_(
                    RefreshToken.expires_at <= (now or utcnow()),
                    RefreshToken.revoked_at.is_not(None),
                )
            )
        )
        return list(result.scalars().all())
