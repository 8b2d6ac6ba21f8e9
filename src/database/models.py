"""
Database models for the Autogrowth engine

SQLAlchemy 2.0 models with full type hints
"""

from datetime import datetime, UTC
from typing import Optional
from decimal import Decimal

from sqlalchemy import (
    String,
    Text,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    Numeric,
    Index,
    JSON,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from src.core.enums import PositionStatus, PositionSource


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")

# Money and rate precision
Money = Numeric(20, 8)
Rate = Numeric(10, 8)


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ===========================
# MODELS
# ===========================


class InvestmentTier(Base):
    """
    Investment tier - administered catalog row

    Read-only to the engine. Tiers are ordered by min_amount (sort_order
    breaks display ties); ranges must not overlap.
    """

    __tablename__ = "investment_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    name: Mapped[str] = mapped_column(String(100), nullable=False, comment="Display name")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    min_amount: Mapped[Decimal] = mapped_column(
        Money, nullable=False, comment="Minimum qualifying equity (USD)"
    )
    max_amount: Mapped[Optional[Decimal]] = mapped_column(
        Money, nullable=True, comment="Upper bound (NULL = unbounded)"
    )

    investment_period_days: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Term length in days"
    )
    daily_roi: Mapped[Decimal] = mapped_column(
        Rate, nullable=False, comment="Flat daily rate applied to principal"
    )

    allocation_mix: Mapped[Optional[dict]] = mapped_column(
        JsonType, nullable=True, comment="Asset symbol -> percentage (sums to 100)"
    )
    features: Mapped[Optional[list]] = mapped_column(JsonType, nullable=True)

    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, comment="Inactive tiers are not upgrade targets"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    positions = relationship("UserPosition", back_populates="tier")

    def __repr__(self) -> str:
        return f"<InvestmentTier(id={self.id}, name={self.name}, min={self.min_amount})>"


class UserLedger(Base):
    """
    Per-user ledger header

    Holds the tier pointer and the claim-check lock that serializes
    upgrades and claims for one user. The user itself is owned by the
    identity provider; user_id is its opaque id.
    """

    __tablename__ = "user_ledgers"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    current_tier_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("investment_tiers.id"),
        nullable=True,
        comment="Tier of the last committed upgrade",
    )

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    lock_token: Mapped[Optional[str]] = mapped_column(
        String(36), nullable=True, comment="Holder of the ledger lock (NULL = free)"
    )
    locked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<UserLedger(user_id={self.user_id}, tier={self.current_tier_id}, locked={self.lock_token is not None})>"


class UserPosition(Base):
    """
    Investment position

    Invariants:
    - accrued_roi only grows, and only through the Accrual Engine
    - active -> matured happens once and never reverses
    - last_roi_calculation never moves backwards
    - claimed_roi <= accrued_roi
    """

    __tablename__ = "user_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    tier_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("investment_tiers.id"), nullable=False
    )

    principal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="USD", nullable=False)

    accrued_roi: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    claimed_roi: Mapped[Decimal] = mapped_column(
        Money, default=Decimal("0"), nullable=False, comment="Part of accrued_roi already paid out"
    )

    status: Mapped[str] = mapped_column(
        String(20), default=PositionStatus.ACTIVE.value, index=True, nullable=False
    )
    source: Mapped[str] = mapped_column(
        String(20), default=PositionSource.DEPOSIT.value, nullable=False
    )

    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    matures_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_roi_calculation: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency: every mutation is UPDATE ... WHERE version = :v
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    tier = relationship("InvestmentTier", back_populates="positions")

    __table_args__ = (
        Index("ix_user_positions_user_status", "user_id", "status"),
    )

    @property
    def claimable_roi(self) -> Decimal:
        """Accrued ROI not yet paid out."""
        return self.accrued_roi - self.claimed_roi

    def __repr__(self) -> str:
        return (
            f"<UserPosition(id={self.id}, user_id={self.user_id}, tier={self.tier_id}, "
            f"principal={self.principal}, status={self.status})>"
        )


class RoiClaim(Base):
    """Audit record of ROI paid out of a position"""

    __tablename__ = "roi_claims"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    position_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("user_positions.id"), index=True, nullable=False
    )
    upgrade_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("tier_upgrades.id"), nullable=True
    )

    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<RoiClaim(position_id={self.position_id}, amount={self.amount}, reason={self.reason})>"


class TierUpgrade(Base):
    """Audit record of a committed tier change"""

    __tablename__ = "tier_upgrades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    from_tier_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("investment_tiers.id"), nullable=True
    )
    to_tier_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("investment_tiers.id"), nullable=False
    )
    new_position_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("user_positions.id"), nullable=True
    )

    equity_before: Mapped[Decimal] = mapped_column(Money, nullable=False)
    claimed_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)
    invested_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<TierUpgrade(user_id={self.user_id}, {self.from_tier_id} -> {self.to_tier_id})>"


class AccrualRun(Base):
    """History of accrual passes (scheduled or manual)"""

    __tablename__ = "accrual_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    as_of: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, comment="The 'now' the pass accrued up to"
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    positions_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    positions_matured: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    positions_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    positions_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    roi_distributed: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"), nullable=False)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(64), default="scheduler", nullable=False)

    def __repr__(self) -> str:
        return f"<AccrualRun(as_of={self.as_of}, success={self.success}, updated={self.positions_updated})>"
