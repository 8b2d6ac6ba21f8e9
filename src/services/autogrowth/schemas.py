"""
Autogrowth Schemas - typed records validated at the ledger boundary.

TierSpec and PositionSnapshot are immutable views of database rows; the
rest are the response shapes of the boundary calls. Money is Decimal
throughout and serializes to a fixed-point string in JSON mode.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator, model_validator

from src.core.enums import PositionStatus, TierAction
from src.utils.clock import ensure_utc


# Fixed-point string in JSON ("0.00000000", never "0E-8")
Money = Annotated[
    Decimal,
    PlainSerializer(lambda value: format(value, "f"), return_type=str, when_used="json"),
]


# =============================================================================
# Ledger records
# =============================================================================


class TierSpec(BaseModel):
    """One tier of the catalog."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    min_amount: Decimal = Field(ge=0)
    max_amount: Optional[Decimal] = None  # None = unbounded
    days: int = Field(gt=0)
    daily_roi: Decimal = Field(gt=0)
    allocation_mix: Dict[str, Decimal] = Field(default_factory=dict)
    sort_order: int = 0
    is_active: bool = True
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "TierSpec":
        if self.max_amount is not None and self.max_amount < self.min_amount:
            raise ValueError(
                f"tier {self.id}: max_amount {self.max_amount} below min_amount {self.min_amount}"
            )
        if self.allocation_mix:
            total = sum(self.allocation_mix.values(), Decimal("0"))
            if total != Decimal("100"):
                raise ValueError(f"tier {self.id}: allocation_mix sums to {total}, expected 100")
        return self

    @property
    def total_roi_percentage(self) -> Decimal:
        """Simple return over the full term, in percent."""
        return self.daily_roi * self.days * 100


class PositionSnapshot(BaseModel):
    """A position as read from the ledger."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    tier_id: int
    principal: Decimal = Field(ge=0)
    currency: str
    accrued_roi: Decimal = Field(ge=0)
    claimed_roi: Decimal = Field(default=Decimal("0"), ge=0)
    status: PositionStatus
    opened_at: datetime
    matures_at: datetime
    last_roi_calculation: Optional[datetime] = None
    version: int = 1

    @field_validator("opened_at", "matures_at", "last_roi_calculation")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _check_invariants(self) -> "PositionSnapshot":
        if self.matures_at < self.opened_at:
            raise ValueError(f"position {self.id}: matures_at before opened_at")
        if self.claimed_roi > self.accrued_roi:
            raise ValueError(f"position {self.id}: claimed_roi exceeds accrued_roi")
        if self.last_roi_calculation is not None and self.last_roi_calculation < self.opened_at:
            raise ValueError(f"position {self.id}: last_roi_calculation before opened_at")
        return self

    @property
    def claimable_roi(self) -> Decimal:
        return self.accrued_roi - self.claimed_roi


@dataclass(frozen=True)
class AccrualStep:
    """What one accrual pass does to one position (pure computation)."""

    position_id: int
    elapsed_days: int
    roi_increment: Decimal
    new_accrued_roi: Decimal
    new_last_calculation: Optional[datetime]
    matures: bool

    @property
    def changed(self) -> bool:
        return self.elapsed_days > 0 or self.matures


# =============================================================================
# Accrual
# =============================================================================


class AccrualFailure(BaseModel):
    """A position the pass could not update."""

    position_id: int
    code: str
    error: str


class AccrualReport(BaseModel):
    """Outcome of one accrual pass."""

    success: bool
    as_of: datetime
    positions_updated: int = 0
    positions_matured: int = 0
    positions_skipped: int = 0  # InvalidState: logged, skipped
    positions_conflicted: int = 0  # Lost a version race; picked up next pass
    positions_failed: int = 0  # Persistence failures
    roi_distributed: Money = Decimal("0")
    failures: List[AccrualFailure] = Field(default_factory=list)
    error: Optional[str] = None


# =============================================================================
# Status
# =============================================================================


class PositionView(BaseModel):
    """Position row of the status snapshot."""

    id: int
    tier_id: int
    tier_name: str
    amount: Money
    currency: str
    accrued_roi: Money
    claimable_roi: Money
    status: PositionStatus
    opened_at: datetime
    matures_at: datetime
    days_remaining: int
    daily_roi: Money
    total_roi_percentage: Money


class AutogrowthStatus(BaseModel):
    """Read-only snapshot of a user's autogrowth ledger."""

    success: bool = True
    user_id: str
    total_invested: Money
    total_accrued_roi: Money
    active_positions: int
    matured_positions: int
    current_value: Money
    overall_roi_percentage: Money
    qualifying_equity: Money
    current_tier: Optional["TierSummary"] = None
    last_calculation: Optional[datetime] = None
    next_calculation: Optional[datetime] = None
    positions: List[PositionView] = Field(default_factory=list)


class SystemStats(BaseModel):
    """System-wide totals (operator view)."""

    success: bool = True
    total_positions: int
    active_positions: int
    matured_positions: int
    claimed_positions: int
    closed_positions: int
    total_invested: Money
    total_accrued_roi: Money
    system_value: Money
    average_roi_percentage: Money
    last_system_run: Optional[datetime] = None
    next_scheduled_run: Optional[datetime] = None


# =============================================================================
# Tiers
# =============================================================================


class TierSummary(BaseModel):
    id: int
    name: str


class TopUpQuote(BaseModel):
    """USDT deposit that covers a USD shortfall."""

    shortfall: Money
    usdt_amount: Money
    fee: Money
    rate: Money


class TierOverviewItem(BaseModel):
    """A catalog tier annotated for one user."""

    id: int
    name: str
    description: Optional[str] = None
    min_amount: Money
    max_amount: Optional[Money] = None
    days: int
    daily_roi: Money
    total_roi_percentage: Money
    allocation_mix: Dict[str, Money] = Field(default_factory=dict)
    is_current: bool
    is_eligible: bool
    shortfall: Money
    action: TierAction
    top_up: Optional[TopUpQuote] = None


class TierOverview(BaseModel):
    success: bool = True
    equity: Money
    current_tier: Optional[TierSummary] = None
    tiers: List[TierOverviewItem] = Field(default_factory=list)


# =============================================================================
# Upgrade / claim
# =============================================================================


class UpgradeResult(BaseModel):
    """Committed tier change."""

    success: bool = True
    new_tier: TierSummary
    previous_tier_id: Optional[int] = None
    position_id: int
    invested_amount: Money
    claimed_amount: Money = Decimal("0")
    equity: Money
    closed_positions: List[int] = Field(default_factory=list)


class RoiClaimResult(BaseModel):
    """Outcome of a manual ROI claim."""

    success: bool = True
    total_claimed: Money
    positions_count: int
    claimed_positions: List[int]
    currency: Optional[str] = None  # None when the claimed positions mix currencies
    claimed_at: datetime


AutogrowthStatus.model_rebuild()
