"""
Tier Resolver

Pure functions from equity to tier membership. No persistence, no
locking: callers pass the equity figure and the catalog they loaded.
"""
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from pydantic import ValidationError

from src.core.enums import PositionStatus, TierAction
from src.database.models import InvestmentTier
from src.services.autogrowth.exceptions import InvalidState, TierNotFound
from src.services.autogrowth.schemas import (
    PositionSnapshot,
    TierOverview,
    TierOverviewItem,
    TierSpec,
    TierSummary,
    TopUpQuote,
)
from src.utils.money import ZERO, ceil_whole, quantize_money, to_decimal


def tier_spec_from_model(tier: InvestmentTier) -> TierSpec:
    """
    Build a validated TierSpec from a catalog row

    Raises:
        InvalidState: If the row violates tier invariants
    """
    try:
        return TierSpec(
            id=tier.id,
            name=tier.name,
            min_amount=tier.min_amount,
            max_amount=tier.max_amount,
            days=tier.investment_period_days,
            daily_roi=tier.daily_roi,
            allocation_mix=tier.allocation_mix or {},
            sort_order=tier.sort_order,
            is_active=tier.is_active,
            description=tier.description,
        )
    except ValidationError as e:
        raise InvalidState(f"Malformed tier {tier.id}: {e.errors()[0]['msg']}", tier_id=tier.id) from e


def _ordering_key(tier: TierSpec):
    # Ascending min_amount; equal minimums resolve to the highest id
    return (tier.min_amount, tier.id)


class TierCatalog:
    """
    Ordered, validated tier list

    Tiers are totally ordered by min_amount. Consecutive ranges may touch
    (next.min == prev.max) but not overlap.
    """

    def __init__(self, tiers: Iterable[TierSpec]):
        self._tiers: List[TierSpec] = sorted(tiers, key=_ordering_key)
        self._validate()

    @classmethod
    def from_models(cls, rows: Iterable[InvestmentTier]) -> "TierCatalog":
        return cls(tier_spec_from_model(row) for row in rows)

    def _validate(self) -> None:
        ids = [tier.id for tier in self._tiers]
        if len(ids) != len(set(ids)):
            raise InvalidState("Tier catalog contains duplicate ids")

        for prev, nxt in zip(self._tiers, self._tiers[1:]):
            if prev.max_amount is None:
                raise InvalidState(
                    f"Tier {prev.id} is unbounded but tier {nxt.id} starts above it",
                    tier_id=prev.id,
                )
            if nxt.min_amount < prev.max_amount:
                raise InvalidState(
                    f"Tier {nxt.id} range overlaps tier {prev.id}",
                    tier_id=nxt.id,
                )

    @property
    def tiers(self) -> Sequence[TierSpec]:
        return tuple(self._tiers)

    @property
    def active_tiers(self) -> List[TierSpec]:
        return [tier for tier in self._tiers if tier.is_active]

    def __len__(self) -> int:
        return len(self._tiers)

    def __iter__(self):
        return iter(self._tiers)

    def get(self, tier_id: int) -> TierSpec:
        for tier in self._tiers:
            if tier.id == tier_id:
                return tier
        raise TierNotFound(f"Tier {tier_id} not found", tier_id=tier_id)

    def get_active(self, tier_id: int) -> TierSpec:
        """Like get(), but inactive tiers are treated as missing."""
        tier = self.get(tier_id)
        if not tier.is_active:
            raise TierNotFound(f"Tier {tier_id} is not active", tier_id=tier_id)
        return tier

    def rank(self, tier_id: int) -> int:
        """Position of the tier in the ascending order (0 = lowest)."""
        for index, tier in enumerate(self._tiers):
            if tier.id == tier_id:
                return index
        raise TierNotFound(f"Tier {tier_id} not found", tier_id=tier_id)


# ===========================
# RESOLUTION
# ===========================


def current_tier(equity: Decimal, tiers: Sequence[TierSpec]) -> TierSpec:
    """
    Highest tier whose min_amount <= equity

    Scans in ascending min_amount order and keeps the last tier that
    qualifies. Equity below every minimum resolves to the lowest tier:
    users always have a tier, there is no "no tier" state.

    Raises:
        InvalidState: If the catalog is empty
    """
    if not tiers:
        raise InvalidState("Tier catalog is empty")

    equity = to_decimal(equity)
    ordered = sorted(tiers, key=_ordering_key)

    resolved = ordered[0]
    for tier in ordered:
        if equity >= tier.min_amount:
            resolved = tier
    return resolved


def shortfall(equity: Decimal, target_tier: TierSpec) -> Decimal:
    """Amount still needed to qualify for target_tier (never negative)."""
    gap = target_tier.min_amount - to_decimal(equity)
    return quantize_money(gap) if gap > ZERO else quantize_money(ZERO)


def is_eligible(equity: Decimal, target_tier: TierSpec) -> bool:
    return to_decimal(equity) >= target_tier.min_amount


def top_up_quote(missing: Decimal, usdt_to_usd_rate: Decimal) -> Optional[TopUpQuote]:
    """
    Whole-USDT deposit covering a USD shortfall

    Returns None when nothing is missing.
    """
    missing = to_decimal(missing)
    if missing <= ZERO:
        return None
    rate = to_decimal(usdt_to_usd_rate)
    if rate <= ZERO:
        raise InvalidState(f"USDT/USD rate must be positive, got {rate}")

    usdt_amount = ceil_whole(missing / rate)
    return TopUpQuote(
        shortfall=quantize_money(missing),
        usdt_amount=usdt_amount,
        fee=quantize_money(usdt_amount - missing),
        rate=rate,
    )


def qualifying_equity(positions: Iterable[PositionSnapshot], currency: str) -> Decimal:
    """Sum of principal over active positions in the qualifying currency."""
    total = sum(
        (
            p.principal
            for p in positions
            if p.status == PositionStatus.ACTIVE and p.currency == currency
        ),
        ZERO,
    )
    return quantize_money(total)


def tier_overview(
    equity: Decimal,
    catalog: TierCatalog,
    usdt_to_usd_rate: Decimal,
) -> TierOverview:
    """Active tiers annotated with current/eligible/shortfall for one equity figure."""
    equity = quantize_money(equity)
    active = catalog.active_tiers
    if not active:
        return TierOverview(equity=equity)

    current = current_tier(equity, active)
    items = []
    for tier in active:
        gap = shortfall(equity, tier)
        eligible = is_eligible(equity, tier)
        if tier.id == current.id:
            action = TierAction.VIEW_DETAILS
        elif eligible:
            action = TierAction.INVEST
        else:
            action = TierAction.UPGRADE

        items.append(
            TierOverviewItem(
                id=tier.id,
                name=tier.name,
                description=tier.description,
                min_amount=tier.min_amount,
                max_amount=tier.max_amount,
                days=tier.days,
                daily_roi=tier.daily_roi,
                total_roi_percentage=tier.total_roi_percentage,
                allocation_mix=tier.allocation_mix,
                is_current=tier.id == current.id,
                is_eligible=eligible,
                shortfall=gap,
                action=action,
                top_up=top_up_quote(gap, usdt_to_usd_rate),
            )
        )

    return TierOverview(
        equity=equity,
        current_tier=TierSummary(id=current.id, name=current.name),
        tiers=items,
    )
