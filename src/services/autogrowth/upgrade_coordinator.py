"""
Upgrade Coordinator

Moves a user to a higher tier as one unit of work:

1. accrue the user's positions up to now
2. equity = active principal (+ claimable ROI when auto-claim is on)
3. reject with InsufficientEquity / AlreadyAtTier, or
4. in one transaction: claim ROI (audited), close the old positions,
   open a single position at the target tier, record the TierUpgrade

The whole flow runs under the user's ledger lock, so a second upgrade or
a claim for the same user fails fast with ConcurrentModification.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.autogrowth_config import AutogrowthConfig, get_config
from src.core.enums import PositionSource, PositionStatus, RoiClaimReason, UpgradeState
from src.database import crud
from src.services.autogrowth.accrual_engine import AccrualEngine, snapshot_position
from src.services.autogrowth.exceptions import (
    AlreadyAtTier,
    ConcurrentModification,
    InsufficientEquity,
    InvalidState,
    PersistenceError,
)
from src.services.autogrowth.ledger_lock import LedgerLock
from src.services.autogrowth.schemas import (
    PositionSnapshot,
    TierSpec,
    TierSummary,
    UpgradeResult,
)
from src.services.autogrowth.tier_resolver import (
    TierCatalog,
    is_eligible,
    qualifying_equity,
    shortfall,
    top_up_quote,
)
from src.utils.clock import ensure_utc, utc_now
from src.utils.money import ZERO, quantize_money


_TRANSITIONS = {
    UpgradeState.IDLE: {UpgradeState.EVALUATING},
    UpgradeState.EVALUATING: {UpgradeState.ELIGIBLE, UpgradeState.INELIGIBLE, UpgradeState.IDLE},
    UpgradeState.ELIGIBLE: {UpgradeState.COMMITTING, UpgradeState.IDLE},
    UpgradeState.INELIGIBLE: {UpgradeState.IDLE},
    UpgradeState.COMMITTING: {UpgradeState.DONE, UpgradeState.IDLE},
    UpgradeState.DONE: set(),
}


class UpgradeFlow:
    """In-memory state of one upgrade call."""

    def __init__(self, user_id: str, target_tier_id: int):
        self.user_id = user_id
        self.target_tier_id = target_tier_id
        self.state = UpgradeState.IDLE
        self.history: List[UpgradeState] = [UpgradeState.IDLE]

    def move(self, new_state: UpgradeState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidState(f"Upgrade cannot go from {self.state.value} to {new_state.value}")
        logger.debug(f"Upgrade {self.user_id} -> tier {self.target_tier_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def abort(self) -> None:
        """Back to IDLE after a rejection or failure."""
        if self.state not in (UpgradeState.IDLE, UpgradeState.DONE):
            self.move(UpgradeState.IDLE)


class UpgradeCoordinator:
    """Orchestrates tier upgrades."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        accrual_engine: Optional[AccrualEngine] = None,
        lock: Optional[LedgerLock] = None,
        config: Optional[AutogrowthConfig] = None,
    ):
        self.session_maker = session_maker
        self.config = config or get_config()
        self.accrual_engine = accrual_engine or AccrualEngine(session_maker)
        self.lock = lock or LedgerLock(session_maker, ttl_seconds=self.config.lock.ttl_seconds)
        self.last_flow: Optional[UpgradeFlow] = None

    async def upgrade(
        self,
        user_id: str,
        target_tier_id: int,
        auto_claim_roi: bool = False,
        now: Optional[datetime] = None,
    ) -> UpgradeResult:
        """
        Upgrade user to target_tier_id

        Raises:
            TierNotFound: Unknown or inactive target tier
            InsufficientEquity: Equity below the target minimum (carries shortfall + top-up quote)
            AlreadyAtTier: User already holds a position at this tier or above
            ConcurrentModification: Another upgrade/claim holds the user's ledger
            PersistenceError: Database failure (nothing was committed)
        """
        now = ensure_utc(now) if now else utc_now()
        flow = UpgradeFlow(user_id, target_tier_id)
        self.last_flow = flow

        try:
            flow.move(UpgradeState.EVALUATING)
            catalog = await self._load_catalog()
            target = catalog.get_active(target_tier_id)

            async with self.lock.hold(user_id):
                report = await self.accrual_engine.accrue(now=now, user_id=user_id)
                if not report.success:
                    raise PersistenceError(
                        "Could not bring positions up to date before upgrade", user_id=user_id
                    )
                result = await self._evaluate_and_commit(
                    flow, catalog, target, user_id, auto_claim_roi, now
                )
        except Exception:
            flow.abort()
            raise

        return result

    async def _load_catalog(self) -> TierCatalog:
        try:
            async with self.session_maker() as session:
                rows = await crud.get_tiers(session)
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to load tier catalog") from e
        return TierCatalog.from_models(rows)

    async def _evaluate_and_commit(
        self,
        flow: UpgradeFlow,
        catalog: TierCatalog,
        target: TierSpec,
        user_id: str,
        auto_claim_roi: bool,
        now: datetime,
    ) -> UpgradeResult:
        currency = self.config.qualifying_currency

        async with self.session_maker() as session:
            try:
                rows = await crud.get_user_positions(
                    session, user_id, statuses=[PositionStatus.ACTIVE], currency=currency
                )
                ledger = await crud.get_ledger(session, user_id)
            except SQLAlchemyError as e:
                raise PersistenceError("Failed to load positions", user_id=user_id) from e

            positions = [snapshot_position(row) for row in rows]
            principal = qualifying_equity(positions, currency)
            claimable = quantize_money(sum((p.claimable_roi for p in positions), ZERO))
            claimed = claimable if auto_claim_roi else ZERO
            equity = quantize_money(principal + claimed)

            if not is_eligible(equity, target):
                flow.move(UpgradeState.INELIGIBLE)
                gap = shortfall(equity, target)
                quote = top_up_quote(gap, self.config.usdt_to_usd_rate)
                logger.info(
                    f"Upgrade rejected for user {user_id} -> {target.name}: "
                    f"equity {equity} < {target.min_amount} (short {gap})"
                )
                raise InsufficientEquity(
                    required=target.min_amount,
                    equity=equity,
                    shortfall=gap,
                    claimable_roi=claimable,
                    top_up=quote.model_dump(mode="json") if quote else None,
                )

            flow.move(UpgradeState.ELIGIBLE)

            highest_tier_id = self._highest_tier(catalog, positions)
            if highest_tier_id is not None and catalog.rank(highest_tier_id) >= catalog.rank(target.id):
                raise AlreadyAtTier(
                    f"User already holds {catalog.get(highest_tier_id).name}, "
                    f"which ranks at or above {target.name}",
                    current_tier_id=highest_tier_id,
                    target_tier_id=target.id,
                )

            previous_tier_id = highest_tier_id
            if previous_tier_id is None and ledger is not None:
                previous_tier_id = ledger.current_tier_id

            flow.move(UpgradeState.COMMITTING)
            try:
                position_id = await self._commit(
                    session,
                    user_id=user_id,
                    target=target,
                    positions=positions,
                    auto_claim_roi=auto_claim_roi,
                    previous_tier_id=previous_tier_id,
                    equity=equity,
                    claimed=claimed,
                    invested=equity,
                    currency=currency,
                    now=now,
                )
            except ConcurrentModification:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Upgrade commit failed for user {user_id}: {e}")
                raise PersistenceError("Failed to commit tier upgrade", user_id=user_id) from e

        flow.move(UpgradeState.DONE)
        logger.info(
            f"User {user_id} upgraded to {target.name}: invested {equity} "
            f"(claimed {claimed}), closed {len(positions)} position(s), new position {position_id}"
        )
        return UpgradeResult(
            new_tier=TierSummary(id=target.id, name=target.name),
            previous_tier_id=previous_tier_id,
            position_id=position_id,
            invested_amount=equity,
            claimed_amount=claimed,
            equity=equity,
            closed_positions=[p.id for p in positions],
        )

    @staticmethod
    def _highest_tier(catalog: TierCatalog, positions: List[PositionSnapshot]) -> Optional[int]:
        if not positions:
            return None
        return max((p.tier_id for p in positions), key=catalog.rank)

    async def _commit(
        self,
        session: AsyncSession,
        user_id: str,
        target: TierSpec,
        positions: List[PositionSnapshot],
        auto_claim_roi: bool,
        previous_tier_id: Optional[int],
        equity: Decimal,
        claimed: Decimal,
        invested: Decimal,
        currency: str,
        now: datetime,
    ) -> int:
        """Write the upgrade and commit. Returns the new position id."""
        tier_row = await crud.get_tier(session, target.id)

        upgrade = await crud.add_tier_upgrade(
            session,
            user_id=user_id,
            from_tier_id=previous_tier_id,
            to_tier_id=target.id,
            equity_before=equity,
            claimed_amount=claimed,
            invested_amount=invested,
            created_at=now,
        )

        for position in positions:
            values = {"closed_at": now, "status": PositionStatus.CLOSED.value}
            claim = position.claimable_roi if auto_claim_roi else ZERO
            if claim > ZERO:
                values["claimed_roi"] = position.accrued_roi

            applied = await crud.update_position_with_version_check(
                session,
                position.id,
                expected_version=position.version,
                expected_status=PositionStatus.ACTIVE,
                **values,
            )
            if not applied:
                raise ConcurrentModification(
                    f"Position {position.id} changed during upgrade", position_id=position.id
                )

            if claim > ZERO:
                await crud.add_roi_claim(
                    session,
                    user_id=user_id,
                    position_id=position.id,
                    amount=claim,
                    currency=position.currency,
                    reason=RoiClaimReason.TIER_UPGRADE,
                    upgrade_id=upgrade.id,
                    created_at=now,
                )

        new_position = await crud.create_position(
            session,
            user_id=user_id,
            tier=tier_row,
            principal=invested,
            opened_at=now,
            currency=currency,
            source=PositionSource.TIER_UPGRADE,
            commit=False,
        )
        upgrade.new_position_id = new_position.id
        await crud.set_current_tier(session, user_id, target.id)

        await session.commit()
        return new_position.id
