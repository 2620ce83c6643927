"""
INK ledger engine.

Owns the mutable balance, streak and rollover state of one session and
applies every change as a single atomic transaction.

Invariants:
1. Balance never goes negative; a deduction that would overdraw is rejected
   in full and leaves state untouched.
2. Rollover carry is capped at min(balance, monthly_ink * rollover_days / period);
   the excess is forfeited at renewal.
3. Streak bonuses inside any rolling window never exceed the weekly cap.

Each mutating entry point holds the engine lock for its whole
read-validate-write sequence and never suspends inside it.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from ink_economy.config.loader import DEFAULT_POLICY, EconomyPolicy
from ink_economy.storage.models import LedgerState, Transaction, TransactionType
from .actions import (
    ActionKind,
    AllowancePeriod,
    cost_as_ink,
    get_action_config,
    get_action_cost,
    usage_key,
)
from .affordability import AffordabilityGate
from .errors import InsufficientBalance, validate_amount
from .pricing import (
    ModelSelection,
    check_generation_eligibility,
    get_generation_cost,
    get_regeneration_cost,
    get_token_pack,
    get_variations_bundle_cost,
    resolve_model_selection,
)
from .tiers import Tier

logger = logging.getLogger(__name__)

SHARE_USAGE_KEY = "share-bonus"

# Transaction types a refund may reverse
REFUNDABLE_TYPES = frozenset({
    TransactionType.GENERATION,
    TransactionType.ASK_TATTTY,
    TransactionType.EDIT,
})


@dataclass(frozen=True)
class DeductResult:
    """Outcome of a deduction attempt."""
    success: bool
    new_balance: int
    shortfall: int = 0
    transaction: Optional[Transaction] = None

    def raise_for_shortfall(self) -> None:
        """Raise InsufficientBalance if the deduction was rejected."""
        if not self.success:
            raise InsufficientBalance(self.new_balance + self.shortfall, self.new_balance)


@dataclass(frozen=True)
class DailyTickResult:
    """What a daily tick changed."""
    streak_days: int
    streak_bonus: int
    rolled_over: bool
    carried: int = 0
    forfeited: int = 0
    granted: int = 0


def _coerce_type(value: Union[TransactionType, str]) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(value)
    except ValueError:
        valid_types = [t.value for t in TransactionType]
        raise ValueError(f"Unsupported transaction type: {value!r} (expected one of {valid_types})")


def _string_metadata(metadata: Optional[Mapping[str, object]]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (metadata or {}).items()}


class LedgerEngine:
    """Applies INK transactions to a LedgerState.

    Args:
        state: Ledger state to own; nothing else should mutate it
        policy: Economy policy providing grants, bonuses and billing period
        clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        state: LedgerState,
        policy: EconomyPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.state = state
        self.policy = policy
        self._clock = clock
        self._lock = threading.RLock()
        self._archive: List[Transaction] = []

    @classmethod
    def open_account(
        cls,
        tier: Tier = Tier.FREE,
        policy: EconomyPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = datetime.now
    ) -> "LedgerEngine":
        """Create the ledger for a brand-new account with its sign-up grant."""
        today = clock().date()
        state = LedgerState(
            balance=0,
            tier=tier,
            renewal_date=today + timedelta(days=policy.billing.period_days),
        )
        engine = cls(state, policy, clock)
        engine.credit_ink(
            policy.catalog.monthly_ink(tier),
            TransactionType.SUBSCRIPTION_GRANT,
            {"tier": tier.value, "reason": "signup"},
        )
        if policy.bonuses.signup:
            engine.credit_ink(policy.bonuses.signup, TransactionType.SIGNUP_BONUS)
        return engine

    @property
    def balance(self) -> int:
        return self.state.balance

    @property
    def tier(self) -> Tier:
        return self.state.tier

    def drain_archive(self) -> List[Transaction]:
        """Return and forget transactions trimmed from the bounded history."""
        with self._lock:
            archived, self._archive = self._archive, []
            return archived

    def restore_archive(self, transactions: Iterable[Transaction]) -> None:
        """Put back drained transactions whose save did not go through."""
        with self._lock:
            self._archive[:0] = list(transactions)

    # ------------------------------------------------------------------
    # Core transitions
    # ------------------------------------------------------------------

    def deduct_ink(
        self,
        amount: int,
        type: Union[TransactionType, str] = TransactionType.GENERATION,
        metadata: Optional[Mapping[str, object]] = None,
        action: Optional[str] = None
    ) -> DeductResult:
        """Atomically check and deduct ``amount`` INK.

        Args:
            amount: Non-negative whole INK to deduct
            type: Transaction type to record
            metadata: String metadata stored on the transaction
            action: Optional action id whose usage counters advance on success

        Returns:
            DeductResult; on rejection ``shortfall`` is ``amount - balance``
            and state is unchanged

        Raises:
            InvalidAmount: If amount is negative or not an integer
        """
        validate_amount(amount)
        tx_type = _coerce_type(type)
        metadata = _string_metadata(metadata)
        if action is not None:
            get_action_config(action)
            metadata.setdefault("action_id", action)

        with self._lock:
            balance = self.state.balance
            if balance < amount:
                logger.warning(
                    "Rejected %s deduction of %d INK: balance %d, short %d",
                    tx_type.value, amount, balance, amount - balance
                )
                return DeductResult(success=False, new_balance=balance, shortfall=amount - balance)

            tx = self._record(tx_type, -amount, metadata)
            if action is not None:
                self._count_usage(action, tx.timestamp.date(), 1)
            logger.info("Deducted %d INK (%s), balance %d", amount, tx_type.value, self.state.balance)
            return DeductResult(success=True, new_balance=self.state.balance, transaction=tx)

    def credit_ink(
        self,
        amount: int,
        type: Union[TransactionType, str],
        metadata: Optional[Mapping[str, object]] = None
    ) -> int:
        """Add ``amount`` INK unconditionally and return the new balance.

        Raises:
            InvalidAmount: If amount is negative or not an integer
        """
        validate_amount(amount)
        tx_type = _coerce_type(type)
        metadata = _string_metadata(metadata)
        with self._lock:
            self._record(tx_type, amount, metadata)
            logger.info("Credited %d INK (%s), balance %d", amount, tx_type.value, self.state.balance)
            return self.state.balance

    def refund(self, transaction_id: str, reason: str = "") -> int:
        """Refund a prior deduction in full and return the new balance.

        The refund credits exactly what was deducted, is tagged ``refund`` and
        references the original transaction id. Usage counted by the original
        deduction is released.

        Raises:
            ValueError: If the transaction is unknown, not a debit, or already refunded
        """
        with self._lock:
            original = self.find_transaction(transaction_id)
            if original is None:
                raise ValueError(f"Unknown transaction: {transaction_id}")
            if original.amount > 0 or original.type not in REFUNDABLE_TYPES:
                raise ValueError(f"Transaction {transaction_id} is not a refundable deduction")
            if self._refund_of(transaction_id) is not None:
                raise ValueError(f"Transaction {transaction_id} was already refunded")

            metadata = {"refund_of": transaction_id, "original_type": original.type.value}
            if reason:
                metadata["reason"] = reason
            self._record(TransactionType.REFUND, -original.amount, metadata)

            action = original.metadata.get("action_id")
            if action is not None:
                self._count_usage(action, original.timestamp.date(), -1)

            logger.info(
                "Refunded %d INK for %s (%s), balance %d",
                -original.amount, transaction_id, reason or "no reason", self.state.balance
            )
            return self.state.balance

    def apply_daily_tick(self, now: Optional[datetime] = None) -> DailyTickResult:
        """Run the once-per-day login bookkeeping.

        Updates the streak, grants the capped streak bonus, resets daily
        usage, and rolls the balance over when the renewal date is reached.
        Re-running with a time on the same calendar day changes nothing.
        """
        now = now or self._clock()
        today = now.date()
        with self._lock:
            self._reset_daily_usage(today)

            bonus = 0
            last_login = self.state.last_login_date
            if last_login is None or last_login < today:
                if last_login == today - timedelta(days=1):
                    self.state.streak_days += 1
                else:
                    self.state.streak_days = 1
                self.state.last_login_date = today
                bonus = self._grant_streak_bonus(today, now)

            if today >= self.state.renewal_date:
                carried, forfeited, granted = self._roll_over(today, now)
                return DailyTickResult(
                    streak_days=self.state.streak_days,
                    streak_bonus=bonus,
                    rolled_over=True,
                    carried=carried,
                    forfeited=forfeited,
                    granted=granted,
                )
            return DailyTickResult(
                streak_days=self.state.streak_days,
                streak_bonus=bonus,
                rolled_over=False,
            )

    def change_tier(
        self,
        new_tier: Tier,
        immediate: bool = True,
        now: Optional[datetime] = None
    ) -> int:
        """Move the session to ``new_tier``.

        Immediate upgrades switch now and credit the grant difference
        pro-rated over the days left in the cycle. Downgrades, and upgrades
        with ``immediate=False``, wait for the next renewal. Choosing the
        current tier cancels a pending change.

        Returns:
            INK credited now (0 for scheduled changes)
        """
        now = now or self._clock()
        with self._lock:
            current = self.state.tier
            if new_tier == current:
                self.state.pending_tier = None
                return 0

            if not (immediate and new_tier.at_least(current)):
                self.state.pending_tier = new_tier
                logger.info(
                    "Scheduled tier change %s -> %s at %s",
                    current.value, new_tier.value, self.state.renewal_date.isoformat()
                )
                return 0

            period = self.policy.billing.period_days
            remaining = (self.state.renewal_date - now.date()).days
            remaining = max(0, min(period, remaining))
            difference = (
                self.policy.catalog.monthly_ink(new_tier) - self.policy.catalog.monthly_ink(current)
            )
            prorated = difference * remaining // period

            self.state.tier = new_tier
            self.state.pending_tier = None
            if prorated > 0:
                self._record(
                    TransactionType.SUBSCRIPTION_GRANT,
                    prorated,
                    {
                        "from_tier": current.value,
                        "tier": new_tier.value,
                        "remaining_days": str(remaining),
                        "reason": "upgrade",
                    },
                )
            logger.info(
                "Upgraded %s -> %s, credited %d INK for %d remaining days",
                current.value, new_tier.value, prorated, remaining
            )
            return prorated

    # ------------------------------------------------------------------
    # Priced operations
    # ------------------------------------------------------------------

    def charge_generation(
        self,
        selection: ModelSelection,
        controls: Iterable[str] = (),
        metadata: Optional[Mapping[str, object]] = None
    ) -> DeductResult:
        """Resolve, gate and deduct a generation in one critical section.

        Raises:
            TierNotEligible: If the model or a control is locked for the tier
        """
        controls = tuple(controls)
        with self._lock:
            model = resolve_model_selection(selection, self.state.tier, self.policy.default_models)
            check_generation_eligibility(model, self.state.tier, controls)
            cost = get_generation_cost(model, controls)
            details = {"model": model, "auto": str(selection.is_auto).lower()}
            if controls:
                details["controls"] = ",".join(controls)
            details.update(metadata or {})
            return self.deduct_ink(cost, TransactionType.GENERATION, details)

    def charge_regeneration(
        self,
        model: str,
        controls: Iterable[str] = (),
        last_generated_at: Optional[datetime] = None,
        metadata: Optional[Mapping[str, object]] = None
    ) -> DeductResult:
        """Deduct a regeneration, discounted inside the policy's regenerate window.

        Raises:
            TierNotEligible: If the model or a control is locked for the tier
        """
        controls = tuple(controls)
        discounts = self.policy.discounts
        with self._lock:
            check_generation_eligibility(model, self.state.tier, controls)
            full_cost = get_generation_cost(model, controls)
            cost = get_regeneration_cost(
                model,
                controls,
                last_generated_at,
                self._clock(),
                discounts.regenerate_window_minutes,
                discounts.regenerate_discount_percent,
            )
            details = {
                "model": model,
                "regenerate": "true",
                "discounted": str(cost < full_cost).lower(),
            }
            if controls:
                details["controls"] = ",".join(controls)
            details.update(metadata or {})
            return self.deduct_ink(cost, TransactionType.GENERATION, details)

    def charge_variations(
        self,
        selection: ModelSelection,
        controls: Iterable[str] = (),
        metadata: Optional[Mapping[str, object]] = None
    ) -> DeductResult:
        """Deduct a reseed bundle priced by the policy's bundle terms.

        Raises:
            TierNotEligible: If the model or a control is locked for the tier
        """
        controls = tuple(controls)
        discounts = self.policy.discounts
        with self._lock:
            model = resolve_model_selection(selection, self.state.tier, self.policy.default_models)
            check_generation_eligibility(model, self.state.tier, controls)
            cost = get_variations_bundle_cost(
                model, controls, discounts.reseed_count, discounts.reseed_pay_for
            )
            details = {"model": model, "variations": str(discounts.reseed_count)}
            if controls:
                details["controls"] = ",".join(controls)
            details.update(metadata or {})
            return self.deduct_ink(cost, TransactionType.GENERATION, details)

    def charge_action(
        self,
        action_id: str,
        metadata: Optional[Mapping[str, object]] = None
    ) -> DeductResult:
        """Resolve, gate and deduct an Ask TaTTTy or edit action.

        Free actions succeed with a zero-INK transaction and still count
        against the allowance.

        Raises:
            TierNotEligible: If the action is locked for the tier
        """
        config = get_action_config(action_id)
        with self._lock:
            self._reset_daily_usage(self._clock().date())
            cost = get_action_cost(
                action_id,
                self.state.tier,
                self.state.usage_today,
                self.state.usage_cycle,
                self.policy.catalog,
            )
            tx_type = (
                TransactionType.ASK_TATTTY if config.kind == ActionKind.ASK_TATTTY
                else TransactionType.EDIT
            )
            return self.deduct_ink(cost_as_ink(cost), tx_type, metadata, action=action_id)

    def purchase_pack(self, pack_id: str) -> int:
        """Credit a confirmed token pack purchase."""
        pack = get_token_pack(pack_id)
        return self.credit_ink(
            pack.ink,
            TransactionType.PURCHASE,
            {"pack_id": pack.id, "price_usd": f"{pack.price_usd:.2f}",
             "expiry_days": str(pack.expiry_days)},
        )

    def grant_share_bonus(self, now: Optional[datetime] = None) -> int:
        """Credit the share bonus, at most ``share_per_day`` times a day.

        Returns:
            INK credited (0 once the daily limit is reached)
        """
        now = now or self._clock()
        bonuses = self.policy.bonuses
        with self._lock:
            self._reset_daily_usage(now.date())
            if self.state.usage_today.get(SHARE_USAGE_KEY, 0) >= bonuses.share_per_day:
                return 0
            self.state.usage_today[SHARE_USAGE_KEY] = self.state.usage_today.get(SHARE_USAGE_KEY, 0) + 1
            self._record(TransactionType.SHARE_BONUS, bonuses.share, {}, now)
            return bonuses.share

    def grant_referral_bonus(self, referral_id: str) -> int:
        """Credit the referral bonus once per referral id in the retained history."""
        with self._lock:
            for tx in self.state.history:
                if (tx.type == TransactionType.REFERRAL_BONUS
                        and tx.metadata.get("referral_id") == referral_id):
                    return 0
            self._record(
                TransactionType.REFERRAL_BONUS,
                self.policy.bonuses.referral,
                {"referral_id": referral_id},
            )
            return self.policy.bonuses.referral

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def gate(self) -> AffordabilityGate:
        """Affordability checks against this ledger."""
        return AffordabilityGate(
            self.state,
            self.policy.catalog,
            self.policy.default_models,
            self._clock().date(),
            self.policy.discounts,
        )

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        for tx in reversed(self.state.history):
            if tx.id == transaction_id:
                return tx
        return None

    def streak_bonus_in_window(self, today: date) -> int:
        """Streak bonus credited in the rolling window ending ``today``."""
        window_start = today - timedelta(days=self.policy.bonuses.streak_window_days - 1)
        return sum(
            amount for day, amount in self.state.streak_bonus_log
            if window_start <= day <= today
        )

    # ------------------------------------------------------------------
    # Internals; callers hold the lock
    # ------------------------------------------------------------------

    def _record(
        self,
        tx_type: TransactionType,
        amount: int,
        metadata: Dict[str, str],
        timestamp: Optional[datetime] = None
    ) -> Transaction:
        before = self.state.balance
        after = before + amount
        if after < 0:
            raise InsufficientBalance(-amount, before)
        tx = Transaction(
            id=f"tx_{uuid.uuid4().hex}",
            type=tx_type,
            amount=amount,
            timestamp=timestamp or self._clock(),
            balance_before=before,
            balance_after=after,
            metadata=metadata,
        )
        self.state.balance = after
        self.state.history.append(tx)
        overflow = len(self.state.history) - self.policy.billing.history_limit
        if overflow > 0:
            self._archive.extend(self.state.history[:overflow])
            del self.state.history[:overflow]
        return tx

    def _refund_of(self, transaction_id: str) -> Optional[Transaction]:
        for tx in self.state.history:
            if tx.type == TransactionType.REFUND and tx.metadata.get("refund_of") == transaction_id:
                return tx
        return None

    def _reset_daily_usage(self, today: date) -> None:
        if self.state.usage_date != today:
            self.state.usage_today = {}
            self.state.usage_date = today

    def _count_usage(self, action_id: str, day: date, direction: int) -> None:
        config = get_action_config(action_id)
        key = usage_key(action_id)
        if config.allowance_period == AllowancePeriod.CYCLE:
            counters = self.state.usage_cycle
        else:
            if self.state.usage_date != day:
                # usage from an earlier day was already reset
                if direction < 0:
                    return
                self._reset_daily_usage(day)
            counters = self.state.usage_today
        counters[key] = max(0, counters.get(key, 0) + direction * config.usage_units)

    def _grant_streak_bonus(self, today: date, now: datetime) -> int:
        bonuses = self.policy.bonuses
        window_start = today - timedelta(days=bonuses.streak_window_days - 1)
        self.state.streak_bonus_log = [
            (day, amount) for day, amount in self.state.streak_bonus_log if day >= window_start
        ]
        window_total = self.streak_bonus_in_window(today)
        bonus = max(0, min(bonuses.streak_per_day, bonuses.streak_weekly_cap - window_total))
        if bonus:
            self._record(
                TransactionType.STREAK_BONUS,
                bonus,
                {"streak_days": str(self.state.streak_days)},
                now,
            )
            self.state.streak_bonus_log.append((today, bonus))
        return bonus

    def _roll_over(self, today: date, now: datetime):
        outgoing = self.state.tier
        incoming = self.state.pending_tier or outgoing
        balance = self.state.balance
        carried = min(balance, self.policy.rollover_cap(outgoing))
        forfeited = balance - carried
        granted = self.policy.catalog.monthly_ink(incoming)

        self._record(
            TransactionType.ROLLOVER,
            carried + granted - balance,
            {
                "carried": str(carried),
                "forfeited": str(forfeited),
                "granted": str(granted),
                "previous_tier": outgoing.value,
                "tier": incoming.value,
            },
            now,
        )
        self.state.tier = incoming
        self.state.pending_tier = None
        self.state.usage_cycle = {}

        period = timedelta(days=self.policy.billing.period_days)
        while self.state.renewal_date <= today:
            self.state.renewal_date += period

        logger.info(
            "Rolled over %s ledger: carried %d, forfeited %d, granted %d, next renewal %s",
            incoming.value, carried, forfeited, granted, self.state.renewal_date.isoformat()
        )
        return carried, forfeited, granted
