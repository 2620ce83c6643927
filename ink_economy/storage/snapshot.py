"""
Ledger snapshot encoding.

Converts LedgerState to and from the JSON-friendly snapshot the persistence
layer stores. Any malformed snapshot raises SnapshotError.
"""

import json
from datetime import date, datetime
from typing import Any, Dict, Optional

from ink_economy.core.errors import SnapshotError
from ink_economy.core.tiers import Tier
from .models import LedgerState, Transaction, TransactionType


def _date_or_none(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    return date.fromisoformat(value)


def _encode_transaction(tx: Transaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "type": tx.type.value,
        "amount": tx.amount,
        "timestamp": tx.timestamp.isoformat(),
        "balanceBefore": tx.balance_before,
        "balanceAfter": tx.balance_after,
        "metadata": dict(tx.metadata),
    }


def decode_transaction(data: Dict[str, Any]) -> Transaction:
    """Build a Transaction from its snapshot form."""
    return Transaction(
        id=str(data["id"]),
        type=TransactionType(data["type"]),
        amount=int(data["amount"]),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        balance_before=int(data["balanceBefore"]),
        balance_after=int(data["balanceAfter"]),
        metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
    )


def to_snapshot(state: LedgerState) -> Dict[str, Any]:
    """Serialize a ledger state.

    The version is not part of the snapshot; storage tracks it alongside.
    """
    return {
        "balance": state.balance,
        "tier": state.tier.value,
        "streakDays": state.streak_days,
        "lastLoginDate": _date_or_none(state.last_login_date),
        "renewalDate": state.renewal_date.isoformat(),
        "usageToday": dict(state.usage_today),
        "usageDate": _date_or_none(state.usage_date),
        "usageCycle": dict(state.usage_cycle),
        "pendingTier": state.pending_tier.value if state.pending_tier else None,
        "streakBonusLog": [[d.isoformat(), amount] for d, amount in state.streak_bonus_log],
        "history": [_encode_transaction(tx) for tx in state.history],
    }


def from_snapshot(data: Any, version: int = 0) -> LedgerState:
    """Restore a ledger state from a snapshot.

    Raises:
        SnapshotError: If the snapshot is missing fields or holds invalid values
    """
    if not isinstance(data, dict):
        raise SnapshotError("Snapshot must be a JSON object")
    try:
        balance = data["balance"]
        if isinstance(balance, bool) or not isinstance(balance, int):
            raise SnapshotError(f"Invalid balance in snapshot: {balance!r}")
        pending = data.get("pendingTier")
        return LedgerState(
            balance=balance,
            tier=Tier(data["tier"]),
            renewal_date=date.fromisoformat(data["renewalDate"]),
            streak_days=int(data.get("streakDays", 0)),
            last_login_date=_parse_date(data.get("lastLoginDate")),
            usage_today={str(k): int(v) for k, v in (data.get("usageToday") or {}).items()},
            usage_date=_parse_date(data.get("usageDate")),
            usage_cycle={str(k): int(v) for k, v in (data.get("usageCycle") or {}).items()},
            pending_tier=Tier(pending) if pending else None,
            streak_bonus_log=[
                (date.fromisoformat(d), int(amount))
                for d, amount in (data.get("streakBonusLog") or [])
            ],
            history=[decode_transaction(tx) for tx in (data.get("history") or [])],
            version=version,
        )
    except SnapshotError:
        raise
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise SnapshotError(f"Corrupt ledger snapshot: {e}") from e


def dumps(state: LedgerState) -> str:
    return json.dumps(to_snapshot(state), sort_keys=True)


def loads(raw: str, version: int = 0) -> LedgerState:
    """Decode a JSON snapshot string.

    Raises:
        SnapshotError: If the text is not valid JSON or not a valid snapshot
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise SnapshotError(f"Unreadable ledger snapshot: {e}") from e
    return from_snapshot(data, version)
