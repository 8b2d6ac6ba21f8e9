"""
Autogrowth error taxonomy.

Every error carries a stable machine code and a to_dict() payload that
the boundary facade merges into its {success: false, ...} result.
"""
from decimal import Decimal
from typing import Any, Dict, Optional


class AutogrowthError(Exception):
    """Base class for engine errors."""

    code = "autogrowth_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        for key, value in self.details.items():
            payload[key] = format(value, "f") if isinstance(value, Decimal) else value
        return payload


class Unauthenticated(AutogrowthError):
    """No identity resolved for the request. Not retried."""

    code = "unauthenticated"


class InsufficientEquity(AutogrowthError):
    """Business rule: equity below the target tier minimum. Never retried automatically."""

    code = "insufficient_equity"

    def __init__(
        self,
        required: Decimal,
        equity: Decimal,
        shortfall: Decimal,
        claimable_roi: Decimal = Decimal("0"),
        top_up: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            "Insufficient equity for tier upgrade",
            required_amount=required,
            current_equity=equity,
            shortfall=shortfall,
            claimable_roi=claimable_roi,
        )
        self.required = required
        self.equity = equity
        self.shortfall = shortfall
        self.claimable_roi = claimable_roi
        if top_up is not None:
            self.details["top_up"] = top_up


class ConcurrentModification(AutogrowthError):
    """Another upgrade/claim holds the user's ledger, or a row changed underneath. Transient."""

    code = "concurrent_modification"


class PersistenceError(AutogrowthError):
    """Datastore failure or timeout. Retry policy belongs to the caller."""

    code = "persistence_error"


class InvalidState(AutogrowthError):
    """Malformed record or a transition the ledger does not allow."""

    code = "invalid_state"


class TierNotFound(InvalidState):
    """Unknown or inactive tier."""

    code = "tier_not_found"


class PositionNotFound(InvalidState):
    """Position missing, foreign, or not eligible for the operation."""

    code = "position_not_found"


class AlreadyAtTier(InvalidState):
    """Upgrade target ranks at or below the user's current tier."""

    code = "already_at_tier"


class NothingToClaim(InvalidState):
    """No matured position with unclaimed ROI."""

    code = "no_claimable_roi"
