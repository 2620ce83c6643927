"""
Unit tests for the ledger engine.

Tests deductions, credits, refunds, daily ticks, rollover and tier changes.
"""

import threading
from datetime import date, timedelta

import pytest

from ink_economy.config.loader import BillingPolicy, DiscountPolicy, EconomyPolicy
from ink_economy.core.errors import InsufficientBalance, InvalidAmount, TierNotEligible
from ink_economy.core.ledger import LedgerEngine
from ink_economy.core.pricing import DetailLevel, ModelSelection
from ink_economy.core.tiers import Tier
from ink_economy.storage.models import LedgerState, TransactionType


def make_engine(clock, balance=100, tier=Tier.FREE, renewal_in_days=30, policy=None):
    state = LedgerState(
        balance=balance,
        tier=tier,
        renewal_date=clock().date() + timedelta(days=renewal_in_days),
    )
    if policy is None:
        return LedgerEngine(state, clock=clock)
    return LedgerEngine(state, policy, clock)


class TestOpenAccount:
    """Test sign-up grants."""

    def test_free_account_starts_with_grant_and_bonus(self, clock):
        """Free sign-up credits 60 monthly INK plus the 100 INK welcome bonus."""
        engine = LedgerEngine.open_account(Tier.FREE, clock=clock)

        assert engine.balance == 160
        types = [tx.type for tx in engine.state.history]
        assert types == [TransactionType.SUBSCRIPTION_GRANT, TransactionType.SIGNUP_BONUS]
        assert engine.state.renewal_date == date(2025, 3, 31)

    def test_studio_account(self, clock):
        engine = LedgerEngine.open_account(Tier.STUDIO, clock=clock)
        assert engine.balance == 1300


class TestDeductInk:
    """Test atomic check-and-deduct."""

    def test_deduct_then_reject(self, clock):
        """Balance 100: deduct 30 succeeds, deduct 90 fails short by 20."""
        engine = make_engine(clock, balance=100)

        first = engine.deduct_ink(30)
        assert first.success
        assert first.new_balance == 70

        second = engine.deduct_ink(90)
        assert not second.success
        assert second.shortfall == 20
        assert second.transaction is None
        assert engine.balance == 70

    def test_rejection_leaves_history_untouched(self, clock):
        engine = make_engine(clock, balance=5)
        engine.deduct_ink(6)
        assert engine.state.history == []

    def test_transaction_records_balances(self, clock):
        engine = make_engine(clock, balance=50)
        tx = engine.deduct_ink(8, metadata={"model": "flash"}).transaction

        assert tx.amount == -8
        assert tx.balance_before == 50
        assert tx.balance_after == 42
        assert tx.metadata == {"model": "flash"}
        assert tx.timestamp == clock()
        assert tx.is_debit

    def test_deduct_zero(self, clock):
        engine = make_engine(clock, balance=0)
        assert engine.deduct_ink(0).success

    @pytest.mark.parametrize("amount", [-1, 1.5, "10", True, float("nan")])
    def test_invalid_amounts(self, clock, amount):
        engine = make_engine(clock)
        with pytest.raises(InvalidAmount):
            engine.deduct_ink(amount)
        assert engine.balance == 100

    def test_raise_for_shortfall(self, clock):
        engine = make_engine(clock, balance=10)
        result = engine.deduct_ink(25)
        with pytest.raises(InsufficientBalance) as exc_info:
            result.raise_for_shortfall()
        assert exc_info.value.shortfall == 15
        assert exc_info.value.required == 25

    def test_unknown_transaction_type(self, clock):
        engine = make_engine(clock)
        with pytest.raises(ValueError, match="Unsupported transaction type"):
            engine.deduct_ink(1, "tip")

    def test_string_transaction_type(self, clock):
        engine = make_engine(clock)
        tx = engine.deduct_ink(1, "edit").transaction
        assert tx.type == TransactionType.EDIT

    def test_balance_never_negative(self, clock):
        """Random deduct/credit sequences keep balance >= 0."""
        engine = make_engine(clock, balance=20)
        for amount in [15, 10, 5, 30, 1, 1, 50]:
            engine.deduct_ink(amount)
            assert engine.balance >= 0
            engine.credit_ink(amount // 3, TransactionType.PURCHASE)
            assert engine.balance >= 0

    def test_concurrent_deductions_never_overdraw(self, clock):
        """Twenty threads racing for 100 INK: exactly ten win."""
        engine = make_engine(clock, balance=100)
        results = []
        results_lock = threading.Lock()

        def worker():
            result = engine.deduct_ink(10)
            with results_lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.success) == 10
        assert engine.balance == 0


class TestCreditInk:
    """Test unconditional credits."""

    def test_credit(self, clock):
        engine = make_engine(clock, balance=10)
        assert engine.credit_ink(80, TransactionType.PURCHASE) == 90
        assert engine.state.history[-1].type == TransactionType.PURCHASE

    def test_negative_credit_rejected(self, clock):
        engine = make_engine(clock)
        with pytest.raises(InvalidAmount):
            engine.credit_ink(-5, TransactionType.PURCHASE)

    def test_purchase_pack(self, clock):
        engine = make_engine(clock, balance=0)
        assert engine.purchase_pack("starter") == 80
        assert engine.state.history[-1].metadata["pack_id"] == "starter"


class TestRefund:
    """Test refunds of failed paid calls."""

    def test_refund_restores_balance(self, clock):
        """Deduct 10, generation fails, refund 10: balance is restored."""
        engine = make_engine(clock, balance=100)
        tx = engine.deduct_ink(10).transaction

        assert engine.refund(tx.id, reason="provider timeout") == 100
        refund = engine.state.history[-1]
        assert refund.type == TransactionType.REFUND
        assert refund.amount == 10
        assert refund.metadata["refund_of"] == tx.id
        assert refund.metadata["reason"] == "provider timeout"

    def test_refund_twice_rejected(self, clock):
        engine = make_engine(clock)
        tx = engine.deduct_ink(10).transaction
        engine.refund(tx.id)
        with pytest.raises(ValueError, match="already refunded"):
            engine.refund(tx.id)
        assert engine.balance == 100

    def test_refund_unknown_transaction(self, clock):
        engine = make_engine(clock)
        with pytest.raises(ValueError, match="Unknown transaction"):
            engine.refund("tx_missing")

    def test_refund_credit_rejected(self, clock):
        engine = make_engine(clock)
        engine.credit_ink(10, TransactionType.PURCHASE)
        with pytest.raises(ValueError, match="not a refundable deduction"):
            engine.refund(engine.state.history[-1].id)

    def test_refund_releases_action_usage(self, clock):
        engine = make_engine(clock, tier=Tier.STUDIO)
        tx = engine.charge_action("idea").transaction
        assert engine.state.usage_today["idea"] == 1

        engine.refund(tx.id)
        assert engine.state.usage_today["idea"] == 0


class TestDailyTick:
    """Test streaks, streak bonuses and daily usage resets."""

    def test_first_login_starts_streak(self, clock):
        engine = make_engine(clock, balance=0)
        result = engine.apply_daily_tick()

        assert result.streak_days == 1
        assert result.streak_bonus == 5
        assert engine.balance == 5
        assert not result.rolled_over

    def test_same_day_tick_is_idempotent(self, clock):
        engine = make_engine(clock, balance=0)
        engine.apply_daily_tick()
        clock.advance(hours=3)
        result = engine.apply_daily_tick()

        assert result.streak_bonus == 0
        assert engine.balance == 5
        assert engine.state.streak_days == 1

    def test_seven_day_streak_capped(self, clock):
        """Seven consecutive logins credit at most 25 INK of streak bonus."""
        engine = make_engine(clock, balance=0)
        total = 0
        for _ in range(7):
            total += engine.apply_daily_tick().streak_bonus
            clock.advance(days=1)

        assert total == 25
        assert engine.state.streak_days == 7
        assert engine.balance == 25

    def test_rolling_window_never_exceeds_cap(self, clock):
        engine = make_engine(clock, balance=0, renewal_in_days=90)
        for _ in range(30):
            engine.apply_daily_tick()
            assert engine.streak_bonus_in_window(clock().date()) <= 25
            clock.advance(days=1)

    def test_missed_day_resets_streak(self, clock):
        engine = make_engine(clock, balance=0)
        engine.apply_daily_tick()
        clock.advance(days=1)
        engine.apply_daily_tick()
        clock.advance(days=2)

        assert engine.apply_daily_tick().streak_days == 1

    def test_usage_resets_on_new_day(self, clock):
        engine = make_engine(clock, tier=Tier.STUDIO)
        engine.charge_action("idea")
        clock.advance(days=1)
        engine.apply_daily_tick()

        assert engine.state.usage_today == {}


class TestRollover:
    """Test renewal and carry caps."""

    def test_free_tier_rollover_caps_carry(self, clock):
        """Free carries at most 60 INK; the rest is forfeited."""
        engine = make_engine(clock, balance=200, renewal_in_days=0)
        result = engine.apply_daily_tick()

        assert result.rolled_over
        assert result.carried == 60
        assert result.forfeited == 145  # 200 + 5 streak bonus - 60
        assert result.granted == 60
        assert engine.balance == 120
        assert engine.state.renewal_date == date(2025, 3, 31)

    def test_balance_bounded_after_renewal(self, clock):
        engine = make_engine(clock, balance=5000, tier=Tier.CREATOR, renewal_in_days=0)
        engine.apply_daily_tick()
        assert engine.balance <= 800 + 400

    def test_small_balance_fully_carried(self, clock):
        engine = make_engine(clock, balance=30, tier=Tier.CREATOR, renewal_in_days=0)
        result = engine.apply_daily_tick()

        assert result.forfeited == 0
        assert engine.balance == 30 + 5 + 400

    def test_single_rollover_transaction(self, clock):
        engine = make_engine(clock, balance=100, renewal_in_days=0)
        engine.apply_daily_tick()
        rollovers = [tx for tx in engine.state.history if tx.type == TransactionType.ROLLOVER]

        assert len(rollovers) == 1
        assert rollovers[0].metadata["forfeited"] == "45"

    def test_missed_periods_roll_once(self, clock):
        engine = make_engine(clock, balance=10, renewal_in_days=-75)
        result = engine.apply_daily_tick()

        assert result.rolled_over
        assert engine.state.renewal_date > clock().date()

    def test_rollover_resets_included_upscales(self, clock):
        engine = make_engine(clock, tier=Tier.CREATOR, renewal_in_days=1)
        engine.charge_action("upscale-2x-fast")
        assert engine.state.usage_cycle == {"upscale-2x": 1}

        clock.advance(days=1)
        engine.apply_daily_tick()
        assert engine.state.usage_cycle == {}


class TestTierChange:
    """Test upgrades and scheduled downgrades."""

    def test_immediate_upgrade_prorates_grant(self, clock):
        """Half the cycle left: credit half of the 800 INK difference."""
        engine = make_engine(clock, balance=10, tier=Tier.CREATOR, renewal_in_days=15)
        credited = engine.change_tier(Tier.STUDIO)

        assert credited == 400
        assert engine.tier == Tier.STUDIO
        assert engine.balance == 410

    def test_downgrade_waits_for_renewal(self, clock):
        engine = make_engine(clock, balance=1000, tier=Tier.STUDIO, renewal_in_days=1)
        assert engine.change_tier(Tier.CREATOR) == 0
        assert engine.tier == Tier.STUDIO
        assert engine.state.pending_tier == Tier.CREATOR

        clock.advance(days=1)
        result = engine.apply_daily_tick()

        assert engine.tier == Tier.CREATOR
        assert engine.state.pending_tier is None
        # studio carry cap applies to the outgoing balance
        assert result.carried == 1005
        assert result.granted == 400

    def test_same_tier_cancels_pending_change(self, clock):
        engine = make_engine(clock, tier=Tier.STUDIO)
        engine.change_tier(Tier.FREE)
        engine.change_tier(Tier.STUDIO)
        assert engine.state.pending_tier is None

    def test_deferred_upgrade(self, clock):
        engine = make_engine(clock, tier=Tier.FREE)
        assert engine.change_tier(Tier.CREATOR, immediate=False) == 0
        assert engine.state.pending_tier == Tier.CREATOR


class TestPricedOperations:
    """Test generation and action charges."""

    def test_charge_auto_generation(self, clock):
        engine = make_engine(clock, balance=100, tier=Tier.STUDIO)
        result = engine.charge_generation(ModelSelection.auto(DetailLevel.MAX_DETAIL))

        assert result.success
        assert result.new_balance == 70
        assert result.transaction.metadata["model"] == "turbo"
        assert result.transaction.metadata["auto"] == "true"

    def test_charge_with_controls(self, clock):
        engine = make_engine(clock, balance=100, tier=Tier.CREATOR)
        result = engine.charge_generation(ModelSelection.explicit("medium"), ["sketch"])

        assert result.new_balance == 84
        assert result.transaction.metadata["controls"] == "sketch"

    def test_locked_model_never_charges(self, clock):
        engine = make_engine(clock, balance=100, tier=Tier.CREATOR)
        with pytest.raises(TierNotEligible):
            engine.charge_generation(ModelSelection.explicit("turbo"))
        assert engine.balance == 100

    def test_free_action_records_zero_transaction(self, clock):
        engine = make_engine(clock, balance=0, tier=Tier.CREATOR)
        result = engine.charge_action("optimize")

        assert result.success
        assert result.transaction.amount == 0
        assert result.transaction.type == TransactionType.ASK_TATTTY

    def test_studio_idea_overage(self, clock):
        engine = make_engine(clock, balance=10, tier=Tier.STUDIO)
        for _ in range(50):
            assert engine.charge_action("idea").transaction.amount == 0
        assert engine.charge_action("idea").transaction.amount == -1
        assert engine.balance == 9

    def test_edit_action(self, clock):
        engine = make_engine(clock, balance=10, tier=Tier.FREE)
        result = engine.charge_action("inpaint")
        assert result.transaction.type == TransactionType.EDIT
        assert engine.balance == 2

    def test_locked_action(self, clock):
        engine = make_engine(clock, tier=Tier.FREE)
        with pytest.raises(TierNotEligible):
            engine.charge_action("relight")

    def test_can_afford_agrees_with_deduct(self, clock):
        engine = make_engine(clock, balance=18)
        for cost in [8, 18, 19, 30]:
            expected = engine.gate().can_afford(cost)
            result = engine.deduct_ink(cost)
            assert result.success == expected
            if result.success:
                engine.credit_ink(cost, TransactionType.REFUND)


class TestDiscountedGenerations:
    """Test regenerate discounts and reseed bundles."""

    def test_regeneration_inside_window(self, clock):
        engine = make_engine(clock, balance=100, tier=Tier.CREATOR)
        last = clock()
        clock.advance(minutes=10)
        result = engine.charge_regeneration("medium", last_generated_at=last)

        assert result.new_balance == 94
        assert result.transaction.metadata["regenerate"] == "true"
        assert result.transaction.metadata["discounted"] == "true"

    def test_regeneration_outside_window(self, clock):
        engine = make_engine(clock, balance=100, tier=Tier.CREATOR)
        last = clock()
        clock.advance(minutes=16)
        result = engine.charge_regeneration("medium", ["sketch"], last_generated_at=last)

        assert result.new_balance == 84
        assert result.transaction.metadata["discounted"] == "false"

    def test_regeneration_uses_policy_terms(self, clock):
        """A 25% discount over a 30 minute window rounds 13.5 INK up to 14."""
        policy = EconomyPolicy(
            discounts=DiscountPolicy(regenerate_window_minutes=30, regenerate_discount_percent=25)
        )
        engine = make_engine(clock, balance=100, tier=Tier.CREATOR, policy=policy)
        last = clock()
        clock.advance(minutes=20)

        assert engine.charge_regeneration("large", last_generated_at=last).new_balance == 86

    def test_locked_regeneration_never_charges(self, clock):
        engine = make_engine(clock, balance=100, tier=Tier.FREE)
        with pytest.raises(TierNotEligible):
            engine.charge_regeneration("large", last_generated_at=clock())
        assert engine.balance == 100
        assert engine.state.history == []

    def test_variations_bundle(self, clock):
        engine = make_engine(clock, balance=100)
        result = engine.charge_variations(ModelSelection.auto())

        assert result.new_balance == 84
        assert result.transaction.metadata["model"] == "flash"
        assert result.transaction.metadata["variations"] == "3"

    def test_variations_use_policy_terms(self, clock):
        policy = EconomyPolicy(discounts=DiscountPolicy(reseed_count=4, reseed_pay_for=3))
        engine = make_engine(clock, balance=100, policy=policy)
        result = engine.charge_variations(ModelSelection.explicit("flash"))

        assert result.new_balance == 76
        assert result.transaction.metadata["variations"] == "4"

    def test_unaffordable_variations(self, clock):
        engine = make_engine(clock, balance=20, tier=Tier.CREATOR)
        result = engine.charge_variations(ModelSelection.explicit("medium"))

        assert not result.success
        assert result.shortfall == 4
        assert engine.balance == 20

    def test_quote_agrees_with_charge(self, clock):
        policy = EconomyPolicy(discounts=DiscountPolicy(reseed_count=5, reseed_pay_for=3))
        engine = make_engine(clock, balance=100, tier=Tier.CREATOR, policy=policy)
        quote = engine.gate().quote_variations(ModelSelection.explicit("large"))
        result = engine.charge_variations(ModelSelection.explicit("large"))

        assert quote.cost == 54
        assert result.transaction.amount == -54


class TestBonuses:
    """Test share and referral bonuses."""

    def test_share_bonus_once_per_day(self, clock):
        engine = make_engine(clock, balance=0)
        assert engine.grant_share_bonus() == 4
        assert engine.grant_share_bonus() == 0

        clock.advance(days=1)
        assert engine.grant_share_bonus() == 4
        assert engine.balance == 8

    def test_referral_bonus_once_per_referral(self, clock):
        engine = make_engine(clock, balance=0)
        assert engine.grant_referral_bonus("ref-1") == 100
        assert engine.grant_referral_bonus("ref-1") == 0
        assert engine.grant_referral_bonus("ref-2") == 100


class TestHistory:
    """Test bounded history."""

    def test_history_trimmed_into_archive(self, clock):
        policy = EconomyPolicy(billing=BillingPolicy(history_limit=3))
        engine = make_engine(clock, balance=0, policy=policy)
        for _ in range(5):
            engine.credit_ink(1, TransactionType.PURCHASE)

        assert len(engine.state.history) == 3
        archived = engine.drain_archive()
        assert len(archived) == 2
        assert engine.drain_archive() == []
        assert archived[0].balance_after == 1

    def test_find_transaction(self, clock):
        engine = make_engine(clock)
        tx = engine.deduct_ink(1).transaction
        assert engine.find_transaction(tx.id) == tx
        assert engine.find_transaction("nope") is None
