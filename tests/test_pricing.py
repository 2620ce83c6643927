"""
Unit tests for generation pricing and model selection.
"""

from datetime import datetime, timedelta

import pytest

from ink_economy.core.errors import TierNotEligible
from ink_economy.core.pricing import (
    MODEL_COST_TABLE,
    TOKEN_PACKS,
    DetailLevel,
    ModelSelection,
    check_generation_eligibility,
    format_ink_balance,
    get_default_model_for_tier,
    get_generation_cost,
    get_regeneration_cost,
    get_token_pack,
    get_variations_bundle_cost,
    is_model_available,
    resolve_model_selection,
)
from ink_economy.core.tiers import Tier


class TestModelCostTable:
    """Test model and control lookups."""

    @pytest.mark.parametrize("model,cost", [
        ("flash", 8),
        ("medium", 12),
        ("large", 18),
        ("turbo", 30),
    ])
    def test_base_costs(self, model, cost):
        assert MODEL_COST_TABLE.get_model(model).base_ink_cost == cost

    def test_unsupported_model(self):
        """Test that unsupported model raises ValueError."""
        with pytest.raises(ValueError, match="Unsupported model"):
            MODEL_COST_TABLE.get_model("ultra")

    def test_unsupported_control(self):
        with pytest.raises(ValueError, match="Unsupported control tool"):
            MODEL_COST_TABLE.get_control("depth")


class TestModelAvailability:
    """Test tier gates on models."""

    def test_turbo_not_available_to_creator(self):
        assert is_model_available("turbo", Tier.CREATOR) is False

    def test_turbo_available_to_studio(self):
        assert is_model_available("turbo", Tier.STUDIO) is True

    def test_flash_available_to_free(self):
        assert is_model_available("flash", Tier.FREE) is True

    def test_guest_has_no_models(self):
        assert is_model_available("flash", None) is False

    def test_locked_control_raises(self):
        with pytest.raises(TierNotEligible) as exc_info:
            check_generation_eligibility("medium", Tier.CREATOR, ["style-transfer"])
        assert exc_info.value.required_tier == Tier.STUDIO
        assert exc_info.value.current_tier == Tier.CREATOR

    def test_locked_model_raises_for_free(self):
        with pytest.raises(TierNotEligible, match="creator tier"):
            check_generation_eligibility("large", Tier.FREE)


class TestModelSelection:
    """Test explicit and auto model selection."""

    def test_explicit_selection(self):
        selection = ModelSelection.explicit("large")
        assert not selection.is_auto
        assert resolve_model_selection(selection, Tier.STUDIO) == "large"

    def test_explicit_unknown_model(self):
        with pytest.raises(ValueError, match="Unsupported model"):
            ModelSelection.explicit("ultra")

    def test_selection_needs_exactly_one_field(self):
        with pytest.raises(ValueError, match="exactly one"):
            ModelSelection()
        with pytest.raises(ValueError, match="exactly one"):
            ModelSelection(model="flash", detail_level=DetailLevel.STANDARD)

    @pytest.mark.parametrize("tier,detail,model", [
        (Tier.FREE, DetailLevel.MAX_DETAIL, "flash"),
        (Tier.CREATOR, DetailLevel.FAST_PREVIEW, "flash"),
        (Tier.CREATOR, DetailLevel.STANDARD, "medium"),
        (Tier.CREATOR, DetailLevel.MAX_DETAIL, "large"),
        (Tier.STUDIO, DetailLevel.FAST_PREVIEW, "medium"),
        (Tier.STUDIO, DetailLevel.STANDARD, "large"),
        (Tier.STUDIO, DetailLevel.MAX_DETAIL, "turbo"),
    ])
    def test_auto_resolution(self, tier, detail, model):
        assert resolve_model_selection(ModelSelection.auto(detail), tier) == model

    def test_auto_always_available_to_tier(self):
        """Every auto choice is a model the tier can use."""
        for tier in Tier:
            for detail in DetailLevel:
                assert is_model_available(get_default_model_for_tier(tier, detail), tier)

    def test_more_detail_never_cheaper(self):
        """Asking for more detail never resolves to a cheaper model."""
        levels = list(DetailLevel)
        for tier in Tier:
            costs = [get_generation_cost(get_default_model_for_tier(tier, d)) for d in levels]
            assert costs == sorted(costs)
        assert get_default_model_for_tier(Tier.STUDIO, DetailLevel.MORE_DETAIL) == "large"

    def test_guest_auto_resolves_like_free(self):
        assert resolve_model_selection(ModelSelection.auto(DetailLevel.MAX_DETAIL), None) == "flash"

    def test_custom_table(self):
        table = {Tier.FREE: {DetailLevel.STANDARD: "flash"}}
        with pytest.raises(ValueError, match="No default model"):
            get_default_model_for_tier(Tier.FREE, DetailLevel.MAX_DETAIL, table)


class TestGenerationCost:
    """Test generation, regeneration and bundle pricing."""

    def test_cost_adds_controls(self):
        assert get_generation_cost("medium", ["sketch", "structure"]) == 12 + 4 + 6

    def test_regeneration_inside_window_is_discounted(self):
        """Regenerating within 15 minutes costs half: (8 + 6) / 2."""
        now = datetime(2025, 3, 1, 12, 0)
        assert get_regeneration_cost("flash", ["structure"], now - timedelta(minutes=5), now) == 7

    def test_regeneration_discount_rounds_up(self):
        now = datetime(2025, 3, 1, 12, 0)
        cost = get_regeneration_cost(
            "flash", (), now - timedelta(minutes=1), now, discount_percent=30
        )
        # 8 * 0.7 = 5.6
        assert cost == 6

    def test_regeneration_outside_window_is_full_price(self):
        now = datetime(2025, 3, 1, 12, 0)
        assert get_regeneration_cost("large", (), now - timedelta(minutes=16), now) == 18

    def test_regeneration_without_previous_generation(self):
        assert get_regeneration_cost("turbo") == 30

    def test_variations_bundle(self):
        """Three variations billed as two."""
        assert get_variations_bundle_cost("large") == 36

    def test_variations_bundle_invalid(self):
        with pytest.raises(ValueError, match="pay_for_count"):
            get_variations_bundle_cost("flash", count=2, pay_for_count=3)


class TestTokenPacks:
    """Test token pack lookups."""

    def test_get_pack(self):
        pack = get_token_pack("medium")
        assert pack.ink == 600
        assert pack.per_ink_cost == 0.04

    def test_booster_expires_sooner(self):
        assert TOKEN_PACKS["session-booster"].expiry_days < TOKEN_PACKS["starter"].expiry_days

    def test_unknown_pack(self):
        with pytest.raises(ValueError, match="Unsupported token pack"):
            get_token_pack("mega")


class TestFormatBalance:
    """Test balance display strings."""

    def test_free_balance(self):
        assert format_ink_balance(160, Tier.FREE) == "160 INK - ~20 Flash generations left"

    def test_studio_balance(self):
        assert format_ink_balance(120, Tier.STUDIO) == "120 INK - ~15 Flash or 4 Turbo left"

    def test_creator_balance(self):
        assert format_ink_balance(36, Tier.CREATOR) == "36 INK - ~4 Flash or 2 Large left"
