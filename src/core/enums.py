"""
Core Enums - shared types for the autogrowth ledger.

Defines:
- PositionStatus: lifecycle of an investment position
- PositionSource: how a position was opened
- RoiClaimReason: why accrued ROI was paid out
- UpgradeState: transient states of a single upgrade call
- TierAction: suggested action for a tier in the overview
"""

from enum import Enum


class PositionStatus(str, Enum):
    """Position lifecycle.

    ACTIVE -> MATURED (Accrual Engine, once, when matures_at <= now)
    MATURED -> CLAIMED (ROI claim)
    ACTIVE -> CLOSED (rolled into a tier upgrade; unclaimed ROI stays claimable)
    """

    ACTIVE = "active"
    MATURED = "matured"
    CLAIMED = "claimed"
    CLOSED = "closed"

    @classmethod
    def is_terminal(cls, status: "PositionStatus") -> bool:
        """No further transitions out of this status."""
        return status in (cls.CLAIMED, cls.CLOSED)


class PositionSource(str, Enum):
    """Origin of a position."""

    DEPOSIT = "deposit"  # Opened by the deposit/purchase flow
    TIER_UPGRADE = "tier_upgrade"  # Opened by the Upgrade Coordinator


class RoiClaimReason(str, Enum):
    """Why ROI left a position."""

    MANUAL = "manual"  # User claimed a matured position
    TIER_UPGRADE = "tier_upgrade"  # Auto-claimed and rolled into an upgrade


class UpgradeState(str, Enum):
    """Upgrade flow: IDLE -> EVALUATING -> {ELIGIBLE -> COMMITTING -> DONE | INELIGIBLE -> IDLE}.

    In-memory only, never persisted.
    """

    IDLE = "idle"
    EVALUATING = "evaluating"
    ELIGIBLE = "eligible"
    INELIGIBLE = "ineligible"
    COMMITTING = "committing"
    DONE = "done"


class TierAction(str, Enum):
    """What the tier page offers for a tier."""

    VIEW_DETAILS = "view_details"  # Current tier
    INVEST = "invest"  # Eligible
    UPGRADE = "upgrade"  # Needs a top-up first
