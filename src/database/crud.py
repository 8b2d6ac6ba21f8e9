"""
CRUD operations for the Autogrowth ledger

Async database operations using SQLAlchemy 2.0.

Position updates and audit inserts only flush: the calling service owns
the transaction so that an upgrade (claims + closes + open + audit)
lands in one commit. Lock, seed and run-history helpers commit
themselves and say so.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.autogrowth_config import DEFAULT_TIERS
from src.core.enums import PositionSource, PositionStatus, RoiClaimReason
from src.database.models import (
    AccrualRun,
    InvestmentTier,
    RoiClaim,
    TierUpgrade,
    UserLedger,
    UserPosition,
)
from src.services.autogrowth.exceptions import PersistenceError
from src.utils.clock import utc_now


@contextmanager
def db_errors(operation: str):
    """
    Re-raise driver/ORM failures as PersistenceError

    Usage:
        with db_errors("load positions"):
            rows = await get_user_positions(session, user_id)
    """
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Database error during {operation}: {e}")
        raise PersistenceError(f"Database error during {operation}", operation=operation) from e


# ===========================
# TIER CATALOG
# ===========================


async def get_tiers(session: AsyncSession, active_only: bool = False) -> List[InvestmentTier]:
    """
    Get tier catalog ordered by min_amount

    Args:
        session: Database session
        active_only: Skip tiers that are switched off

    Returns:
        List of InvestmentTier
    """
    stmt = select(InvestmentTier).order_by(InvestmentTier.min_amount, InvestmentTier.id)
    if active_only:
        stmt = stmt.where(InvestmentTier.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_tier(session: AsyncSession, tier_id: int) -> Optional[InvestmentTier]:
    return await session.get(InvestmentTier, tier_id)


async def seed_tiers(
    session: AsyncSession,
    tiers: Iterable[Dict[str, Any]] = DEFAULT_TIERS,
) -> int:
    """
    Insert catalog tiers that do not exist yet (matched by id) and commit

    Returns:
        Number of tiers inserted
    """
    existing = set((await session.execute(select(InvestmentTier.id))).scalars().all())

    inserted = 0
    for index, tier in enumerate(tiers):
        if tier["id"] in existing:
            continue
        session.add(
            InvestmentTier(
                id=tier["id"],
                name=tier["name"],
                description=tier.get("description"),
                min_amount=tier["min_amount"],
                max_amount=tier.get("max_amount"),
                investment_period_days=tier["days"],
                daily_roi=tier["daily_roi"],
                allocation_mix=tier.get("allocation_mix"),
                features=tier.get("features"),
                sort_order=tier.get("sort_order", index + 1),
                is_active=tier.get("is_active", True),
            )
        )
        inserted += 1

    if inserted:
        await session.commit()
        logger.info(f"Seeded {inserted} investment tiers")
    return inserted


# ===========================
# USER LEDGER + LOCK
# ===========================


async def get_ledger(session: AsyncSession, user_id: str) -> Optional[UserLedger]:
    return await session.get(UserLedger, user_id)


async def get_or_create_ledger(session: AsyncSession, user_id: str) -> UserLedger:
    """
    Get or create the ledger header for user and commit if created

    Args:
        session: Database session
        user_id: Identity provider user id

    Returns:
        UserLedger model
    """
    ledger = await get_ledger(session, user_id)
    if ledger is None:
        session.add(UserLedger(user_id=user_id))
        try:
            await session.commit()
            logger.info(f"Created autogrowth ledger for user {user_id}")
        except IntegrityError:
            # Created concurrently by another request
            await session.rollback()
        ledger = await get_ledger(session, user_id)
    return ledger


async def acquire_ledger_lock(
    session: AsyncSession,
    user_id: str,
    token: str,
    ttl_seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Claim the user's ledger lock

    Conditional UPDATE: succeeds only if the lock is free or its holder
    went silent for longer than ttl_seconds. Zero rows means another
    holder owns it. Commits so the claim is visible to other sessions.

    Returns:
        True if this token now holds the lock
    """
    now = now or utc_now()
    stale_before = now - timedelta(seconds=ttl_seconds)

    stmt = (
        update(UserLedger)
        .where(
            UserLedger.user_id == user_id,
            or_(UserLedger.lock_token.is_(None), UserLedger.locked_at < stale_before),
        )
        .values(lock_token=token, locked_at=now, version=UserLedger.version + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def release_ledger_lock(session: AsyncSession, user_id: str, token: str) -> bool:
    """Release the lock if (and only if) token still holds it. Commits."""
    stmt = (
        update(UserLedger)
        .where(UserLedger.user_id == user_id, UserLedger.lock_token == token)
        .values(lock_token=None, locked_at=None)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount == 1


async def set_current_tier(session: AsyncSession, user_id: str, tier_id: int) -> None:
    stmt = (
        update(UserLedger)
        .where(UserLedger.user_id == user_id)
        .values(current_tier_id=tier_id, version=UserLedger.version + 1)
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)


# ===========================
# POSITIONS
# ===========================


async def get_position(session: AsyncSession, position_id: int) -> Optional[UserPosition]:
    return await session.get(UserPosition, position_id)


async def get_user_positions(
    session: AsyncSession,
    user_id: str,
    statuses: Optional[Sequence[PositionStatus]] = None,
    currency: Optional[str] = None,
) -> List[UserPosition]:
    """
    Get user's positions, oldest first

    Args:
        session: Database session
        user_id: User id
        statuses: Only these statuses (all if None)
        currency: Only this currency (all if None)
    """
    stmt = select(UserPosition).where(UserPosition.user_id == user_id)
    if statuses:
        stmt = stmt.where(UserPosition.status.in_([s.value for s in statuses]))
    if currency:
        stmt = stmt.where(UserPosition.currency == currency)
    stmt = stmt.order_by(UserPosition.opened_at, UserPosition.id)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_active_positions(
    session: AsyncSession, user_id: Optional[str] = None
) -> List[UserPosition]:
    """Active positions for one user, or for everyone when user_id is None."""
    stmt = select(UserPosition).where(UserPosition.status == PositionStatus.ACTIVE.value)
    if user_id is not None:
        stmt = stmt.where(UserPosition.user_id == user_id)
    stmt = stmt.order_by(UserPosition.id)

    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_position(
    session: AsyncSession,
    user_id: str,
    tier: InvestmentTier,
    principal: Decimal,
    opened_at: Optional[datetime] = None,
    currency: str = "USD",
    source: PositionSource = PositionSource.DEPOSIT,
    commit: bool = True,
) -> UserPosition:
    """
    Open a position on tier

    matures_at = opened_at + tier.investment_period_days.

    Args:
        session: Database session
        user_id: Owner
        tier: Catalog tier
        principal: Invested amount
        opened_at: Defaults to now
        currency: Position currency
        source: Deposit flow or tier upgrade
        commit: False when part of a larger transaction (flushes instead)

    Returns:
        Created UserPosition
    """
    opened_at = opened_at or utc_now()
    position = UserPosition(
        user_id=user_id,
        tier_id=tier.id,
        principal=principal,
        currency=currency,
        accrued_roi=Decimal("0"),
        claimed_roi=Decimal("0"),
        status=PositionStatus.ACTIVE.value,
        source=source.value,
        opened_at=opened_at,
        matures_at=opened_at + timedelta(days=tier.investment_period_days),
        last_roi_calculation=None,
        version=1,
    )
    session.add(position)

    if commit:
        await session.commit()
        await session.refresh(position)
        logger.info(f"Opened position {position.id} for user {user_id}: {principal} {currency} on tier {tier.id}")
    else:
        await session.flush()

    return position


async def update_position_with_version_check(
    session: AsyncSession,
    position_id: int,
    expected_version: int,
    expected_status: PositionStatus,
    **values: Any,
) -> bool:
    """
    Compare-and-set update of one position

    Applies values only if the row still has expected_version and
    expected_status, bumping version. Does not commit.

    Returns:
        False if the row changed underneath (lost race)
    """
    stmt = (
        update(UserPosition)
        .where(
            and_(
                UserPosition.id == position_id,
                UserPosition.version == expected_version,
                UserPosition.status == expected_status.value,
            )
        )
        .values(version=expected_version + 1, updated_at=utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


# ===========================
# AUDIT RECORDS
# ===========================


async def add_roi_claim(
    session: AsyncSession,
    user_id: str,
    position_id: int,
    amount: Decimal,
    currency: str,
    reason: RoiClaimReason,
    upgrade_id: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> RoiClaim:
    claim = RoiClaim(
        user_id=user_id,
        position_id=position_id,
        upgrade_id=upgrade_id,
        amount=amount,
        currency=currency,
        reason=reason.value,
        created_at=created_at or utc_now(),
    )
    session.add(claim)
    await session.flush()
    return claim


async def get_roi_claims(session: AsyncSession, user_id: str) -> List[RoiClaim]:
    stmt = select(RoiClaim).where(RoiClaim.user_id == user_id).order_by(RoiClaim.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def add_tier_upgrade(
    session: AsyncSession,
    user_id: str,
    from_tier_id: Optional[int],
    to_tier_id: int,
    equity_before: Decimal,
    claimed_amount: Decimal,
    invested_amount: Decimal,
    created_at: Optional[datetime] = None,
) -> TierUpgrade:
    upgrade = TierUpgrade(
        user_id=user_id,
        from_tier_id=from_tier_id,
        to_tier_id=to_tier_id,
        equity_before=equity_before,
        claimed_amount=claimed_amount,
        invested_amount=invested_amount,
        created_at=created_at or utc_now(),
    )
    session.add(upgrade)
    await session.flush()
    return upgrade


async def get_tier_upgrades(session: AsyncSession, user_id: str) -> List[TierUpgrade]:
    stmt = select(TierUpgrade).where(TierUpgrade.user_id == user_id).order_by(TierUpgrade.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# ACCRUAL RUNS + STATS
# ===========================


async def record_accrual_run(
    session: AsyncSession,
    as_of: datetime,
    started_at: datetime,
    success: bool,
    positions_updated: int,
    positions_matured: int,
    positions_skipped: int,
    positions_failed: int,
    roi_distributed: Decimal,
    error: Optional[str] = None,
    triggered_by: str = "scheduler",
) -> AccrualRun:
    """
    Append an accrual pass to the run history and commit

    Returns:
        Created AccrualRun
    """
    run = AccrualRun(
        as_of=as_of,
        started_at=started_at,
        finished_at=utc_now(),
        success=success,
        positions_updated=positions_updated,
        positions_matured=positions_matured,
        positions_skipped=positions_skipped,
        positions_failed=positions_failed,
        roi_distributed=roi_distributed,
        error=error,
        triggered_by=triggered_by,
    )
    session.add(run)
    await session.commit()
    await session.refresh(run)
    return run


async def get_last_accrual_run(session: AsyncSession) -> Optional[AccrualRun]:
    stmt = select(AccrualRun).order_by(AccrualRun.as_of.desc(), AccrualRun.id.desc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_position_totals(session: AsyncSession) -> Dict[str, Dict[str, Any]]:
    """
    Aggregate positions by status

    Returns:
        {status: {"count", "principal", "accrued", "claimed"}}
    """
    stmt = select(
        UserPosition.status,
        func.count(UserPosition.id),
        func.coalesce(func.sum(UserPosition.principal), 0),
        func.coalesce(func.sum(UserPosition.accrued_roi), 0),
        func.coalesce(func.sum(UserPosition.claimed_roi), 0),
    ).group_by(UserPosition.status)
    result = await session.execute(stmt)

    totals: Dict[str, Dict[str, Any]] = {}
    for status, count, principal, accrued, claimed in result.all():
        totals[status] = {
            "count": count,
            "principal": Decimal(str(principal)),
            "accrued": Decimal(str(accrued)),
            "claimed": Decimal(str(claimed)),
        }
    return totals
