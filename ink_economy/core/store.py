"""
Process-wide economy store.

Holds one LedgerEngine per signed-in account, hands engines and
affordability gates to callers, and persists ledgers through the
repository. Pass a single store instance to the code that needs it.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, TypeVar

from ink_economy.config.loader import DEFAULT_POLICY, EconomyPolicy
from ink_economy.storage import snapshot
from ink_economy.storage.models import LedgerState
from ink_economy.storage.repository import LedgerRepository
from .affordability import AffordabilityGate
from .errors import ConcurrentModificationConflict, SnapshotError
from .ledger import LedgerEngine
from .tiers import Tier

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LedgerView:
    """What UI consumers read about a session's ledger."""
    balance: int
    tier: Tier
    usage_today: Dict[str, int]
    streak_days: int
    pending_tier: Optional[Tier] = None


class EconomyStore:
    """Container for the live ledgers of signed-in accounts.

    Args:
        repository: Persistence collaborator
        policy: Economy policy shared by every ledger
        clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        repository: LedgerRepository,
        policy: EconomyPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.policy = policy
        self._clock = clock
        self._engines: Dict[str, LedgerEngine] = {}
        self._lock = threading.Lock()

    def start_session(self, user_id: str, tier: Tier = Tier.FREE) -> LedgerEngine:
        """Hydrate an account's ledger and run the login tick.

        A missing snapshot opens a new account with the sign-up grant at
        ``tier``. A corrupt snapshot resets to the free tier with an empty
        balance.
        """
        engine = self.load_engine(user_id, tier)
        engine.apply_daily_tick(self._clock())
        with self._lock:
            self._engines[user_id] = engine
        logger.info(
            "Started session for %s: %s tier, %d INK", user_id, engine.tier.value, engine.balance
        )
        return engine

    def end_session(self, user_id: str) -> None:
        """Persist and discard an account's ledger."""
        self.persist(user_id)
        with self._lock:
            self._engines.pop(user_id, None)
        logger.info("Ended session for %s", user_id)

    def has_session(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._engines

    def engine(self, user_id: str) -> LedgerEngine:
        """Get the live ledger engine for a signed-in account.

        Raises:
            KeyError: If the account has no active session
        """
        with self._lock:
            if user_id not in self._engines:
                raise KeyError(f"No active session for {user_id}")
            return self._engines[user_id]

    def gate(self, user_id: Optional[str]) -> AffordabilityGate:
        """Affordability gate for an account, or a guest gate for ``None``."""
        if user_id is None:
            return AffordabilityGate(
                None,
                self.policy.catalog,
                self.policy.default_models,
                self._clock().date(),
                self.policy.discounts,
            )
        return self.engine(user_id).gate()

    def view(self, user_id: str) -> LedgerView:
        state = self.engine(user_id).state
        return LedgerView(
            balance=state.balance,
            tier=state.tier,
            usage_today=dict(state.usage_today),
            streak_days=state.streak_days,
            pending_tier=state.pending_tier,
        )

    def persist(self, user_id: str) -> int:
        """Save an account's live ledger with compare-and-swap.

        Returns:
            The stored version

        Raises:
            ConcurrentModificationConflict: If the stored ledger changed since it was loaded
        """
        engine = self.engine(user_id)
        state = engine.state
        archived = engine.drain_archive()
        try:
            version = self.repository.save_snapshot(
                user_id,
                snapshot.dumps(state),
                state.version,
                archived + list(state.history),
            )
        except Exception:
            engine.restore_archive(archived)
            raise
        state.version = version
        return version

    def transact(
        self,
        user_id: str,
        operation: Callable[[LedgerEngine], T],
        max_retries: Optional[int] = None
    ) -> T:
        """Apply ``operation`` to the stored ledger with optimistic locking.

        Each attempt reloads the stored ledger, runs the operation and saves
        with compare-and-swap. On a version conflict the whole sequence is
        retried, up to ``max_retries`` attempts.

        Returns:
            Whatever ``operation`` returned on the successful attempt

        Raises:
            ConcurrentModificationConflict: If every attempt conflicted
        """
        attempts = max_retries or self.policy.billing.max_conflict_retries
        last_error: Optional[ConcurrentModificationConflict] = None
        for attempt in range(1, attempts + 1):
            engine = self.load_engine(user_id, Tier.FREE)
            result = operation(engine)
            try:
                version = self.repository.save_snapshot(
                    user_id,
                    snapshot.dumps(engine.state),
                    engine.state.version,
                    engine.drain_archive() + list(engine.state.history),
                )
            except ConcurrentModificationConflict as e:
                last_error = e
                logger.warning(
                    "Ledger conflict for %s on attempt %d/%d, retrying", user_id, attempt, attempts
                )
                continue
            engine.state.version = version
            with self._lock:
                if user_id in self._engines:
                    self._engines[user_id] = engine
            return result
        raise last_error

    def load_engine(self, user_id: str, tier: Tier = Tier.FREE) -> LedgerEngine:
        """Load the stored ledger without starting a session or saving.

        Accounts with no stored ledger get a fresh, unsaved sign-up ledger.
        """
        stored = self.repository.fetch_snapshot(user_id)
        if stored is None:
            logger.info("No stored ledger for %s, opening %s account", user_id, tier.value)
            return LedgerEngine.open_account(tier, self.policy, self._clock)
        try:
            state = snapshot.loads(stored.payload, stored.version)
        except SnapshotError as e:
            logger.warning("Resetting ledger for %s: %s", user_id, e)
            state = self._safe_default(stored.version)
        return LedgerEngine(state, self.policy, self._clock)

    def _safe_default(self, version: int) -> LedgerState:
        today = self._clock().date()
        return LedgerState(
            balance=0,
            tier=Tier.FREE,
            renewal_date=today + timedelta(days=self.policy.billing.period_days),
            version=version,
        )
