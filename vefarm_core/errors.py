"""
Error taxonomy for VeFarm.

Every failure is a precondition violation raised before state is
written; the farm rolls the whole transaction back when one escapes.
"""

from __future__ import annotations


class FarmError(ValueError):
    """Base class for all farm precondition failures."""

    code: str = "FarmError"

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class InvalidPool(FarmError):
    """Unknown or out-of-range pool id, or an operation not allowed on it."""
    code = "InvalidPool"


class DuplicatePool(FarmError):
    """The stake unit is already registered in another pool."""
    code = "DuplicatePool"


class InsufficientBalance(FarmError):
    """Withdraw, burn or transfer exceeding the recorded amount."""
    code = "InsufficientBalance"


class InvalidLockDuration(FarmError):
    """Lock duration outside bounds, or an extension that does not extend."""
    code = "InvalidLockDuration"


class InvalidAmount(FarmError):
    """Negative amount, or a zero amount where a positive one is required."""
    code = "InvalidAmount"


class ParameterOutOfRange(FarmError):
    """Configuration value outside its permitted range."""
    code = "ParameterOutOfRange"


class SupplyCapExceeded(FarmError):
    """The reward token refused a mint that would pass its cap."""
    code = "SupplyCapExceeded"


class ReentrantCall(FarmError):
    """A mutating entry point was re-entered while a transaction is open."""
    code = "ReentrantCall"


class InvariantViolation(FarmError):
    """Post-transaction invariant check failed."""
    code = "InvariantViolation"
