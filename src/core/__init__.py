"""
Core module - shared types for the autogrowth ledger.
"""

from src.core.enums import (
    PositionStatus,
    PositionSource,
    RoiClaimReason,
    UpgradeState,
    TierAction,
)

__all__ = [
    "PositionStatus",
    "PositionSource",
    "RoiClaimReason",
    "UpgradeState",
    "TierAction",
]
