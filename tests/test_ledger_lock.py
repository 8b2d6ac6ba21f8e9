"""
Tests for the per-user ledger lock
"""

from datetime import timedelta

import pytest

from src.database import crud
from src.services.autogrowth.exceptions import ConcurrentModification
from src.services.autogrowth.ledger_lock import LedgerLock
from src.utils.clock import utc_now


@pytest.fixture
def lock(session_maker):
    return LedgerLock(session_maker, ttl_seconds=30)


async def _lock_state(session_maker, user_id):
    async with session_maker() as session:
        ledger = await crud.get_ledger(session, user_id)
        return ledger.lock_token, ledger.locked_at


@pytest.mark.asyncio
async def test_acquire_creates_ledger_and_locks(session_maker, lock):
    token = await lock.acquire("u1")

    lock_token, locked_at = await _lock_state(session_maker, "u1")
    assert lock_token == token
    assert locked_at is not None


@pytest.mark.asyncio
async def test_second_acquire_is_rejected(lock):
    await lock.acquire("u1")

    with pytest.raises(ConcurrentModification) as exc_info:
        await lock.acquire("u1")
    assert exc_info.value.code == "concurrent_modification"


@pytest.mark.asyncio
async def test_locks_are_per_user(lock):
    await lock.acquire("u1")
    # Another user's ledger is independent
    assert await lock.acquire("u2")


@pytest.mark.asyncio
async def test_release_frees_the_ledger(session_maker, lock):
    token = await lock.acquire("u1")
    await lock.release("u1", token)

    assert (await _lock_state(session_maker, "u1")) == (None, None)
    assert await lock.acquire("u1")


@pytest.mark.asyncio
async def test_release_with_foreign_token_is_ignored(session_maker, lock):
    token = await lock.acquire("u1")
    await lock.release("u1", "not-the-holder")

    lock_token, _ = await _lock_state(session_maker, "u1")
    assert lock_token == token


@pytest.mark.asyncio
async def test_stale_lock_is_taken_over(session_maker, lock):
    """A holder silent for longer than the TTL loses the lock"""
    async with session_maker() as session:
        await crud.get_or_create_ledger(session, "u1")
        assert await crud.acquire_ledger_lock(
            session, "u1", "crashed-worker", ttl_seconds=30, now=utc_now() - timedelta(seconds=120)
        )

    token = await lock.acquire("u1")

    lock_token, _ = await _lock_state(session_maker, "u1")
    assert lock_token == token != "crashed-worker"


@pytest.mark.asyncio
async def test_fresh_lock_is_not_taken_over(session_maker, lock):
    async with session_maker() as session:
        await crud.get_or_create_ledger(session, "u1")
        await crud.acquire_ledger_lock(
            session, "u1", "busy-worker", ttl_seconds=30, now=utc_now() - timedelta(seconds=5)
        )

    with pytest.raises(ConcurrentModification):
        await lock.acquire("u1")


@pytest.mark.asyncio
async def test_hold_releases_on_error(session_maker, lock):
    with pytest.raises(RuntimeError):
        async with lock.hold("u1"):
            raise RuntimeError("boom")

    assert (await _lock_state(session_maker, "u1")) == (None, None)
