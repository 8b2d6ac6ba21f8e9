"""
Accrual Engine

Grows accrued_roi on active positions by whole elapsed days and flips
positions to matured once their term is over.

Re-running with the same "now" is a no-op: last_roi_calculation only
advances by the days actually credited, so a pass that failed halfway
can simply be run again.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Tuple, Union

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import PositionStatus
from src.database import crud
from src.database.models import UserPosition
from src.services.autogrowth.exceptions import InvalidState, PersistenceError
from src.services.autogrowth.schemas import (
    AccrualFailure,
    AccrualReport,
    AccrualStep,
    PositionSnapshot,
)
from src.utils.clock import ONE_DAY, ensure_utc, utc_now, whole_days_between
from src.utils.money import ZERO, quantize_money


def snapshot_position(position: UserPosition) -> PositionSnapshot:
    """
    Validated, immutable view of a position row

    Raises:
        InvalidState: If the row breaks ledger invariants
    """
    try:
        return PositionSnapshot(
            id=position.id,
            user_id=position.user_id,
            tier_id=position.tier_id,
            principal=position.principal,
            currency=position.currency,
            accrued_roi=position.accrued_roi,
            claimed_roi=position.claimed_roi,
            status=position.status,
            opened_at=position.opened_at,
            matures_at=position.matures_at,
            last_roi_calculation=position.last_roi_calculation,
            version=position.version,
        )
    except ValidationError as e:
        raise InvalidState(
            f"Malformed position {position.id}: {e.errors()[0]['msg']}",
            position_id=position.id,
        ) from e


def plan_accrual(position: PositionSnapshot, daily_roi: Decimal, now: datetime) -> AccrualStep:
    """
    Compute one accrual step (no I/O)

    Days are counted from last_roi_calculation (or opened_at) up to
    min(now, matures_at), so nothing accrues past maturity. Only whole
    days are credited and the anchor moves by exactly those days; the
    fractional remainder is picked up by a later pass.

    Raises:
        InvalidState: If the position is not active
    """
    if position.status != PositionStatus.ACTIVE:
        raise InvalidState(
            f"Position {position.id} is {position.status.value}, not active",
            position_id=position.id,
        )

    now = ensure_utc(now)
    base = position.last_roi_calculation or position.opened_at
    horizon = min(now, position.matures_at)

    elapsed = whole_days_between(base, horizon)
    increment = quantize_money(position.principal * daily_roi * elapsed) if elapsed else ZERO
    new_last = base + ONE_DAY * elapsed if elapsed else position.last_roi_calculation

    return AccrualStep(
        position_id=position.id,
        elapsed_days=elapsed,
        roi_increment=increment,
        new_accrued_roi=quantize_money(position.accrued_roi + increment),
        new_last_calculation=new_last,
        matures=position.matures_at <= now,
    )


class AccrualEngine:
    """
    Runs accrual passes over the ledger

    Each position is written with its own compare-and-set UPDATE and
    committed on its own: one bad row never blocks the rest of the pass.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def accrue(
        self,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> AccrualReport:
        """
        Run one pass over active positions

        Args:
            now: Instant to accrue up to (defaults to current time)
            user_id: Restrict the pass to one user's positions
            dry_run: Compute and report without writing

        Returns:
            AccrualReport (success=False if any position failed to persist)
        """
        now = ensure_utc(now) if now else utc_now()
        report = AccrualReport(success=True, as_of=now)
        scope = f"user {user_id}" if user_id else "all users"

        async with self.session_maker() as session:
            try:
                rates: Dict[int, Decimal] = {
                    tier.id: tier.daily_roi for tier in await crud.get_tiers(session)
                }
                positions = await crud.get_active_positions(session, user_id)
            except SQLAlchemyError as e:
                logger.error(f"Accrual pass ({scope}) could not load positions: {e}")
                raise PersistenceError("Failed to load active positions") from e

            # Plan everything before the first write: a rollback expires loaded rows
            plans = [self._plan(position, rates, now) for position in positions]

            for position_id, planned in plans:
                if isinstance(planned, InvalidState):
                    logger.warning(f"Skipping position {position_id}: {planned.message}")
                    report.positions_skipped += 1
                    report.failures.append(
                        AccrualFailure(position_id=position_id, code=planned.code, error=planned.message)
                    )
                    continue
                snapshot, step = planned
                if not step.changed:
                    continue
                if dry_run:
                    self._count(report, step)
                    continue
                await self._apply(session, snapshot, step, report)

        report.success = report.positions_failed == 0
        if not report.success:
            report.error = f"{report.positions_failed} position(s) failed to persist"

        logger.info(
            f"Accrual pass ({scope}, as of {now.isoformat()}"
            f"{', dry run' if dry_run else ''}): "
            f"updated={report.positions_updated}, matured={report.positions_matured}, "
            f"skipped={report.positions_skipped}, conflicts={report.positions_conflicted}, "
            f"failed={report.positions_failed}, roi={report.roi_distributed}"
        )
        return report

    @staticmethod
    def _plan(
        position: UserPosition,
        rates: Dict[int, Decimal],
        now: datetime,
    ) -> Tuple[int, Union[InvalidState, Tuple[PositionSnapshot, AccrualStep]]]:
        position_id = position.id
        try:
            daily_roi = rates.get(position.tier_id)
            if daily_roi is None:
                raise InvalidState(
                    f"Position {position_id} references unknown tier {position.tier_id}",
                    position_id=position_id,
                )
            if daily_roi <= ZERO:
                raise InvalidState(
                    f"Tier {position.tier_id} has non-positive daily_roi", position_id=position_id
                )
            snapshot = snapshot_position(position)
            return position_id, (snapshot, plan_accrual(snapshot, daily_roi, now))
        except InvalidState as e:
            return position_id, e

    async def _apply(
        self,
        session: AsyncSession,
        snapshot: PositionSnapshot,
        step: AccrualStep,
        report: AccrualReport,
    ) -> None:
        values = {"accrued_roi": step.new_accrued_roi}
        if step.new_last_calculation is not None:
            values["last_roi_calculation"] = step.new_last_calculation
        if step.matures:
            values["status"] = PositionStatus.MATURED.value

        try:
            applied = await crud.update_position_with_version_check(
                session,
                snapshot.id,
                expected_version=snapshot.version,
                expected_status=PositionStatus.ACTIVE,
                **values,
            )
            if not applied:
                await session.rollback()
                logger.info(f"Position {snapshot.id} changed during accrual, left for next pass")
                report.positions_conflicted += 1
                return
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Failed to persist accrual for position {snapshot.id}: {e}")
            report.positions_failed += 1
            report.failures.append(
                AccrualFailure(position_id=snapshot.id, code=PersistenceError.code, error=str(e))
            )
            return

        self._count(report, step)
        if step.matures:
            logger.info(f"Position {snapshot.id} matured with accrued ROI {step.new_accrued_roi}")

    @staticmethod
    def _count(report: AccrualReport, step: AccrualStep) -> None:
        report.positions_updated += 1
        if step.matures:
            report.positions_matured += 1
        report.roi_distributed = quantize_money(report.roi_distributed + step.roi_increment)
