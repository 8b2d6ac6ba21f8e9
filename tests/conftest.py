"""
Pytest configuration and fixtures for Autogrowth engine tests
"""

from datetime import datetime, timedelta, UTC
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config.autogrowth_config import AutogrowthConfig, LockConfig, RetryConfig
from src.core.enums import PositionStatus
from src.database import crud
from src.database.models import Base, InvestmentTier, UserPosition
from src.services.autogrowth.service import AutogrowthService


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Fixed "now" for deterministic ledger tests
NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def autogrowth_config() -> AutogrowthConfig:
    """Config with instant retries"""
    return AutogrowthConfig(
        lock=LockConfig(ttl_seconds=30),
        retry=RetryConfig(attempts=3, initial_wait_sec=0, max_wait_sec=0),
    )


@pytest.fixture
async def default_tiers(session_maker):
    """Seed the default 5-tier catalog"""
    async with session_maker() as session:
        await crud.seed_tiers(session)


@pytest.fixture
def service(session_maker, autogrowth_config) -> AutogrowthService:
    return AutogrowthService(session_maker, config=autogrowth_config)


# ===========================
# HELPERS
# ===========================


async def add_tier(
    session_maker,
    tier_id: int,
    min_amount: str,
    max_amount: Optional[str],
    days: int,
    daily_roi: str,
    name: Optional[str] = None,
    is_active: bool = True,
) -> None:
    async with session_maker() as session:
        session.add(
            InvestmentTier(
                id=tier_id,
                name=name or f"Tier {tier_id}",
                min_amount=Decimal(min_amount),
                max_amount=Decimal(max_amount) if max_amount is not None else None,
                investment_period_days=days,
                daily_roi=Decimal(daily_roi),
                allocation_mix={"BTC": 50, "USDT": 50},
                sort_order=tier_id,
                is_active=is_active,
            )
        )
        await session.commit()


async def open_position(
    session_maker,
    user_id: str,
    tier_id: int,
    principal: str,
    opened_at: datetime,
    currency: str = "USD",
) -> int:
    async with session_maker() as session:
        tier = await crud.get_tier(session, tier_id)
        position = await crud.create_position(
            session,
            user_id=user_id,
            tier=tier,
            principal=Decimal(principal),
            opened_at=opened_at,
            currency=currency,
        )
        return position.id


async def load_position(session_maker, position_id: int) -> UserPosition:
    async with session_maker() as session:
        return await crud.get_position(session, position_id)


async def set_position_fields(session_maker, position_id: int, **values) -> None:
    """Write raw column values (bypasses the engine; for corrupt-row tests)"""
    async with session_maker() as session:
        position = await crud.get_position(session, position_id)
        for key, value in values.items():
            setattr(position, key, value)
        await session.commit()


def days_ago(days: int, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)


__all__ = [
    "NOW",
    "PositionStatus",
    "add_tier",
    "open_position",
    "load_position",
    "set_position_fields",
    "days_ago",
]
