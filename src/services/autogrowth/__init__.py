"""
Autogrowth engine

Accrues daily ROI on investment positions, resolves investment tiers
from equity and coordinates tier upgrades and ROI claims.

Entry point is AutogrowthService in src.services.autogrowth.service.
"""

from src.services.autogrowth.exceptions import (
    AlreadyAtTier,
    AutogrowthError,
    ConcurrentModification,
    InsufficientEquity,
    InvalidState,
    NothingToClaim,
    PersistenceError,
    PositionNotFound,
    TierNotFound,
    Unauthenticated,
)
from src.services.autogrowth.tier_resolver import (
    TierCatalog,
    current_tier,
    is_eligible,
    shortfall,
    top_up_quote,
)

__all__ = [
    "AlreadyAtTier",
    "AutogrowthError",
    "ConcurrentModification",
    "InsufficientEquity",
    "InvalidState",
    "NothingToClaim",
    "PersistenceError",
    "PositionNotFound",
    "TierNotFound",
    "Unauthenticated",
    "TierCatalog",
    "current_tier",
    "is_eligible",
    "shortfall",
    "top_up_quote",
]
