"""
Data models for the INK ledger.

Defines transaction records and the per-session ledger state.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ink_economy.core.tiers import Tier


class TransactionType(Enum):
    """Kinds of INK movement."""
    GENERATION = "generation"
    ASK_TATTTY = "ask-tattty"
    EDIT = "edit"
    PURCHASE = "purchase"
    SUBSCRIPTION_GRANT = "subscription-grant"
    ROLLOVER = "rollover"
    STREAK_BONUS = "streak-bonus"
    REFUND = "refund"
    SIGNUP_BONUS = "signup-bonus"
    SHARE_BONUS = "share-bonus"
    REFERRAL_BONUS = "referral-bonus"


@dataclass(frozen=True)
class Transaction:
    """Immutable record of one INK movement.

    ``amount`` is signed: negative for debits, positive for credits.
    Once appended to a ledger's history, a transaction is never modified.
    """
    id: str
    type: TransactionType
    amount: int
    timestamp: datetime
    balance_before: int
    balance_after: int
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0


@dataclass
class LedgerState:
    """Mutable INK state for one authenticated session.

    Only LedgerEngine mutates this object.
    """
    balance: int
    tier: Tier
    renewal_date: date
    streak_days: int = 0
    last_login_date: Optional[date] = None
    usage_today: Dict[str, int] = field(default_factory=dict)
    usage_date: Optional[date] = None
    usage_cycle: Dict[str, int] = field(default_factory=dict)
    pending_tier: Optional[Tier] = None
    streak_bonus_log: List[Tuple[date, int]] = field(default_factory=list)
    history: List[Transaction] = field(default_factory=list)
    version: int = 0

    def __post_init__(self):
        if self.balance < 0:
            raise ValueError("balance cannot be negative")
        if self.streak_days < 0:
            raise ValueError("streak_days cannot be negative")
