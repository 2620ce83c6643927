"""
Economy error taxonomy.

All errors are local and recoverable; callers map them to the
low-balance, upgrade or retry flows.
"""

from typing import Optional

from .tiers import Tier


class EconomyError(Exception):
    """Base class for INK economy errors."""


class InsufficientBalance(EconomyError):
    """Raised when a deduction exceeds the available balance."""
    def __init__(self, required: int, balance: int):
        self.required = required
        self.balance = balance
        self.shortfall = required - balance
        super().__init__(
            f"Insufficient INK balance: need {required}, have {balance} "
            f"(short {self.shortfall})"
        )


class InvalidAmount(EconomyError, ValueError):
    """Raised for negative, NaN or non-integer INK amounts."""
    def __init__(self, amount: object):
        self.amount = amount
        super().__init__(f"Invalid INK amount: {amount!r}")


class TierNotEligible(EconomyError):
    """Raised when a model or action needs a higher tier than the session has."""
    def __init__(self, feature: str, required_tier: Tier, current_tier: Optional[Tier]):
        self.feature = feature
        self.required_tier = required_tier
        self.current_tier = current_tier
        current = current_tier.value if current_tier else "guest"
        super().__init__(
            f"{feature} requires the {required_tier.value} tier (current: {current})"
        )


class ConcurrentModificationConflict(EconomyError):
    """Raised when a stored ledger changed since it was read."""
    def __init__(self, user_id: str, expected_version: int):
        self.user_id = user_id
        self.expected_version = expected_version
        super().__init__(
            f"Ledger for {user_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class SnapshotError(EconomyError):
    """Raised when a persisted ledger snapshot cannot be decoded."""


def validate_amount(amount: object) -> int:
    """Return ``amount`` if it is a non-negative integer, else raise InvalidAmount."""
    # bool is an int subclass but never a valid amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(amount)
    if amount < 0:
        raise InvalidAmount(amount)
    return amount
