"""
Per-user ledger lock

Claim-check on the user_ledgers row: whoever flips lock_token from NULL
to its own token owns the user's ledger until it releases. Works across
processes because the database arbitrates the claim. A holder that died
without releasing is taken over once its claim is older than the TTL.
"""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database import crud
from src.services.autogrowth.exceptions import ConcurrentModification, PersistenceError


class LedgerLock:
    """Serializes upgrades and claims for a single user."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], ttl_seconds: int = 30):
        self.session_maker = session_maker
        self.ttl_seconds = ttl_seconds

    async def acquire(self, user_id: str) -> str:
        """
        Claim the user's ledger

        Returns:
            Lock token to pass to release()

        Raises:
            ConcurrentModification: Another upgrade/claim holds the ledger
            PersistenceError: Database failure
        """
        token = str(uuid.uuid4())
        try:
            async with self.session_maker() as session:
                await crud.get_or_create_ledger(session, user_id)
                acquired = await crud.acquire_ledger_lock(
                    session, user_id, token, ttl_seconds=self.ttl_seconds
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to acquire ledger lock for user {user_id}: {e}")
            raise PersistenceError("Failed to acquire ledger lock", user_id=user_id) from e

        if not acquired:
            logger.info(f"Ledger of user {user_id} is busy, rejecting concurrent operation")
            raise ConcurrentModification(
                "Another upgrade or claim is in progress for this user", user_id=user_id
            )

        logger.debug(f"Ledger lock {token[:8]} acquired for user {user_id}")
        return token

    async def release(self, user_id: str, token: str) -> None:
        """Release the lock. A lock that already expired and moved on is left alone."""
        try:
            async with self.session_maker() as session:
                released = await crud.release_ledger_lock(session, user_id, token)
        except SQLAlchemyError as e:
            # The TTL frees the ledger eventually
            logger.error(f"Failed to release ledger lock for user {user_id}: {e}")
            return

        if not released:
            logger.warning(f"Ledger lock {token[:8]} of user {user_id} was taken over before release")

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[str]:
        """
        Usage:
            async with lock.hold(user_id):
                ...
        """
        token = await self.acquire(user_id)
        try:
            yield token
        finally:
            await self.release(user_id, token)
