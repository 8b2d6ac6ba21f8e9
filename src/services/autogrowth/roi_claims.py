"""
ROI claims

Pays out the ROI of matured positions, and ROI an upgrade left behind on
closed positions. accrued_roi is left untouched (it belongs to the Accrual
Engine); the payout is recorded in claimed_roi plus an audited RoiClaim
row. Matured positions move to claimed, closed positions stay closed.
"""
from datetime import datetime
from typing import List, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.autogrowth_config import AutogrowthConfig, get_config
from src.core.enums import PositionStatus, RoiClaimReason
from src.database import crud
from src.services.autogrowth.accrual_engine import snapshot_position
from src.services.autogrowth.exceptions import (
    ConcurrentModification,
    NothingToClaim,
    PersistenceError,
    PositionNotFound,
)
from src.services.autogrowth.ledger_lock import LedgerLock
from src.services.autogrowth.schemas import PositionSnapshot, RoiClaimResult
from src.utils.clock import ensure_utc, utc_now
from src.utils.money import ZERO, quantize_money

# Closed positions keep whatever ROI an upgrade did not claim
CLAIMABLE_STATUSES = (PositionStatus.MATURED, PositionStatus.CLOSED)


class RoiClaimService:
    """Manual ROI claims, serialized per user with the upgrade lock."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        lock: Optional[LedgerLock] = None,
        config: Optional[AutogrowthConfig] = None,
    ):
        self.session_maker = session_maker
        self.config = config or get_config()
        self.lock = lock or LedgerLock(session_maker, ttl_seconds=self.config.lock.ttl_seconds)

    async def claim(
        self,
        user_id: str,
        position_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RoiClaimResult:
        """
        Claim ROI of one matured or closed position, or of all of them

        Args:
            user_id: Owner
            position_id: Specific position (every claimable position if None)
            now: Claim timestamp

        Raises:
            PositionNotFound: position_id is foreign, missing, still active or has nothing to claim
            NothingToClaim: No matured or closed position with unclaimed ROI
            ConcurrentModification: Ledger busy or a position changed underneath
            PersistenceError: Database failure (nothing was committed)
        """
        now = ensure_utc(now) if now else utc_now()

        async with self.lock.hold(user_id):
            async with self.session_maker() as session:
                try:
                    positions = await self._claimable_positions(session, user_id, position_id)
                    result = await self._write_claims(session, user_id, positions, now)
                except ConcurrentModification:
                    await session.rollback()
                    raise
                except SQLAlchemyError as e:
                    await session.rollback()
                    logger.error(f"ROI claim failed for user {user_id}: {e}")
                    raise PersistenceError("Failed to claim ROI", user_id=user_id) from e

        logger.info(
            f"User {user_id} claimed {result.total_claimed} ROI from "
            f"{result.positions_count} position(s)"
        )
        return result

    async def _claimable_positions(
        self,
        session: AsyncSession,
        user_id: str,
        position_id: Optional[int],
    ) -> List[PositionSnapshot]:
        if position_id is not None:
            row = await crud.get_position(session, position_id)
            if (
                row is None
                or row.user_id != user_id
                or row.status not in CLAIMABLE_STATUSES
            ):
                raise PositionNotFound(
                    "Position not found or not eligible for ROI claim", position_id=position_id
                )
            position = snapshot_position(row)
            if position.claimable_roi <= ZERO:
                raise PositionNotFound(
                    "Position has no unclaimed ROI", position_id=position_id
                )
            return [position]

        rows = await crud.get_user_positions(session, user_id, statuses=CLAIMABLE_STATUSES)
        positions = [p for p in map(snapshot_position, rows) if p.claimable_roi > ZERO]
        if not positions:
            raise NothingToClaim("You have no matured or closed positions with available ROI")
        return positions

    async def _write_claims(
        self,
        session: AsyncSession,
        user_id: str,
        positions: List[PositionSnapshot],
        now: datetime,
    ) -> RoiClaimResult:
        total = ZERO
        for position in positions:
            amount = position.claimable_roi
            values = {"claimed_roi": position.accrued_roi}
            if position.status == PositionStatus.MATURED:
                values.update(status=PositionStatus.CLAIMED.value, closed_at=now)

            applied = await crud.update_position_with_version_check(
                session,
                position.id,
                expected_version=position.version,
                expected_status=position.status,
                **values,
            )
            if not applied:
                raise ConcurrentModification(
                    f"Position {position.id} changed during claim", position_id=position.id
                )
            await crud.add_roi_claim(
                session,
                user_id=user_id,
                position_id=position.id,
                amount=amount,
                currency=position.currency,
                reason=RoiClaimReason.MANUAL,
                created_at=now,
            )
            logger.info(f"Claimed {amount} {position.currency} from position {position.id}")
            total += amount

        await session.commit()

        currencies = {p.currency for p in positions}
        return RoiClaimResult(
            total_claimed=quantize_money(total),
            positions_count=len(positions),
            claimed_positions=[p.id for p in positions],
            currency=currencies.pop() if len(currencies) == 1 else None,
            claimed_at=now,
        )
