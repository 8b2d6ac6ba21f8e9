"""
Read-only views of the ledger: per-user status and system totals
"""
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.autogrowth_config import AutogrowthConfig, get_config
from src.core.enums import PositionStatus
from src.database import crud
from src.database.models import InvestmentTier, UserPosition
from src.services.autogrowth.schemas import (
    AutogrowthStatus,
    PositionView,
    SystemStats,
    TierOverview,
    TierSummary,
)
from src.services.autogrowth.tier_resolver import TierCatalog, current_tier, tier_overview
from src.utils.clock import ensure_utc, next_day_start, utc_now, whole_days_between
from src.utils.money import ZERO, percentage, quantize_money


def next_scheduled_run(config: AutogrowthConfig, now: datetime) -> datetime:
    """Next UTC occurrence of the daily accrual time."""
    now = ensure_utc(now)
    candidate = now.replace(
        hour=config.schedule.accrual_hour,
        minute=config.schedule.accrual_minute,
        second=0,
        microsecond=0,
    )
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _position_view(position: UserPosition, tier: Optional[InvestmentTier], now: datetime) -> PositionView:
    matures_at = ensure_utc(position.matures_at)
    return PositionView(
        id=position.id,
        tier_id=position.tier_id,
        tier_name=tier.name if tier else f"Tier {position.tier_id}",
        amount=position.principal,
        currency=position.currency,
        accrued_roi=position.accrued_roi,
        claimable_roi=position.claimable_roi,
        status=position.status,
        opened_at=ensure_utc(position.opened_at),
        matures_at=matures_at,
        days_remaining=(
            whole_days_between(now, matures_at)
            if position.status == PositionStatus.ACTIVE.value
            else 0
        ),
        daily_roi=tier.daily_roi if tier else ZERO,
        total_roi_percentage=percentage(position.accrued_roi, position.principal),
    )


class StatusService:
    """Builds status snapshots. Never writes."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: Optional[AutogrowthConfig] = None,
    ):
        self.session_maker = session_maker
        self.config = config or get_config()

    async def get_status(self, user_id: str, now: Optional[datetime] = None) -> AutogrowthStatus:
        """
        Snapshot of a user's ledger

        total_invested counts active principal; total_accrued_roi counts
        unclaimed ROI over every position; current_value is their sum.
        """
        now = ensure_utc(now) if now else utc_now()

        with crud.db_errors("load status"):
            async with self.session_maker() as session:
                tiers: Dict[int, InvestmentTier] = {t.id: t for t in await crud.get_tiers(session)}
                positions = await crud.get_user_positions(session, user_id)

        active = [p for p in positions if p.status == PositionStatus.ACTIVE.value]
        matured = [p for p in positions if p.status == PositionStatus.MATURED.value]

        total_invested = quantize_money(sum((p.principal for p in active), ZERO))
        total_roi = quantize_money(sum((p.claimable_roi for p in positions), ZERO))
        equity = quantize_money(
            sum((p.principal for p in active if p.currency == self.config.qualifying_currency), ZERO)
        )

        calculations = [ensure_utc(p.last_roi_calculation) for p in positions if p.last_roi_calculation]
        last_calculation = max(calculations) if calculations else None

        catalog = TierCatalog.from_models(tiers.values())
        summary = None
        if catalog.active_tiers:
            tier = current_tier(equity, catalog.active_tiers)
            summary = TierSummary(id=tier.id, name=tier.name)

        return AutogrowthStatus(
            user_id=user_id,
            total_invested=total_invested,
            total_accrued_roi=total_roi,
            active_positions=len(active),
            matured_positions=len(matured),
            current_value=quantize_money(total_invested + total_roi),
            overall_roi_percentage=percentage(total_roi, total_invested),
            qualifying_equity=equity,
            current_tier=summary,
            last_calculation=last_calculation,
            next_calculation=next_day_start(last_calculation) if last_calculation else None,
            positions=[_position_view(p, tiers.get(p.tier_id), now) for p in positions],
        )

    async def get_tiers(self, user_id: str) -> TierOverview:
        """Active tiers annotated for the user's qualifying equity."""
        with crud.db_errors("load tier overview"):
            async with self.session_maker() as session:
                rows = await crud.get_tiers(session)
                positions = await crud.get_user_positions(
                    session,
                    user_id,
                    statuses=[PositionStatus.ACTIVE],
                    currency=self.config.qualifying_currency,
                )
        catalog = TierCatalog.from_models(rows)

        equity = sum((p.principal for p in positions), ZERO)
        return tier_overview(equity, catalog, self.config.usdt_to_usd_rate)

    async def get_system_stats(self, now: Optional[datetime] = None) -> SystemStats:
        """
        System-wide totals

        total_invested counts principal still at work (active + matured);
        closed positions were rolled into upgrade positions and are not
        counted twice.
        """
        now = ensure_utc(now) if now else utc_now()

        with crud.db_errors("load system stats"):
            async with self.session_maker() as session:
                totals = await crud.get_position_totals(session)
                last_run = await crud.get_last_accrual_run(session)

        def bucket(status: PositionStatus) -> Dict:
            return totals.get(
                status.value, {"count": 0, "principal": ZERO, "accrued": ZERO, "claimed": ZERO}
            )

        invested = bucket(PositionStatus.ACTIVE)["principal"] + bucket(PositionStatus.MATURED)["principal"]
        unclaimed = sum((b["accrued"] - b["claimed"] for b in totals.values()), ZERO)

        return SystemStats(
            total_positions=sum(b["count"] for b in totals.values()),
            active_positions=bucket(PositionStatus.ACTIVE)["count"],
            matured_positions=bucket(PositionStatus.MATURED)["count"],
            claimed_positions=bucket(PositionStatus.CLAIMED)["count"],
            closed_positions=bucket(PositionStatus.CLOSED)["count"],
            total_invested=quantize_money(invested),
            total_accrued_roi=quantize_money(unclaimed),
            system_value=quantize_money(invested + unclaimed),
            average_roi_percentage=percentage(unclaimed, invested),
            last_system_run=ensure_utc(last_run.finished_at) if last_run else None,
            next_scheduled_run=next_scheduled_run(self.config, now),
        )
