"""
Generation pricing and model selection.

Handles INK costs for generation models and control tools, resolves the
"auto" model choice, and prices regenerations and reseed bundles.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from .errors import TierNotEligible
from .tiers import Tier


class DetailLevel(Enum):
    """UI bias used only when resolving the auto model choice."""
    FAST_PREVIEW = "fast-preview"
    STANDARD = "standard"
    MORE_DETAIL = "more-detail"
    MAX_DETAIL = "max-detail"


@dataclass(frozen=True)
class ModelConfig:
    """INK pricing and tier gate for a generation model."""
    id: str
    name: str
    base_ink_cost: int
    estimated_time_seconds: Tuple[int, int]  # min, max
    quality: str
    min_tier: Tier


@dataclass(frozen=True)
class ControlToolConfig:
    """INK surcharge for a generation control tool."""
    id: str
    name: str
    ink_adder: int
    min_tier: Tier


@dataclass(frozen=True)
class ModelCostTable:
    """Fixed pricing table for generation models and control tools."""
    models: Dict[str, ModelConfig]
    controls: Dict[str, ControlToolConfig]

    def get_model(self, model: str) -> ModelConfig:
        """Get the config for a model.

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.models:
            raise ValueError(f"Unsupported model: {model}")
        return self.models[model]

    def get_control(self, control: str) -> ControlToolConfig:
        """Get the config for a control tool.

        Raises:
            ValueError: If control tool is not supported
        """
        if control not in self.controls:
            raise ValueError(f"Unsupported control tool: {control}")
        return self.controls[control]


MODEL_COST_TABLE = ModelCostTable(
    models={
        "flash": ModelConfig("flash", "Flash", 8, (2, 6), "draft", Tier.FREE),
        "medium": ModelConfig("medium", "Medium", 12, (6, 12), "balanced", Tier.CREATOR),
        "large": ModelConfig("large", "Large", 18, (10, 20), "detailed", Tier.CREATOR),
        "turbo": ModelConfig("turbo", "Turbo", 30, (15, 30), "max-detail", Tier.STUDIO),
    },
    controls={
        "sketch": ControlToolConfig("sketch", "Sketch", 4, Tier.CREATOR),
        "structure": ControlToolConfig("structure", "Structure", 6, Tier.CREATOR),
        "style": ControlToolConfig("style", "Style", 6, Tier.CREATOR),
        "style-transfer": ControlToolConfig("style-transfer", "Style Transfer", 8, Tier.STUDIO),
    },
)


# Policy data, keyed by (tier, detail level). Swap it via the economy policy.
# Within a tier, higher detail never resolves to a cheaper model.
DEFAULT_MODEL_TABLE: Dict[Tier, Dict[DetailLevel, str]] = {
    Tier.FREE: {
        DetailLevel.FAST_PREVIEW: "flash",
        DetailLevel.STANDARD: "flash",
        DetailLevel.MORE_DETAIL: "flash",
        DetailLevel.MAX_DETAIL: "flash",
    },
    Tier.CREATOR: {
        DetailLevel.FAST_PREVIEW: "flash",
        DetailLevel.STANDARD: "medium",
        DetailLevel.MORE_DETAIL: "large",
        DetailLevel.MAX_DETAIL: "large",
    },
    Tier.STUDIO: {
        DetailLevel.FAST_PREVIEW: "medium",
        DetailLevel.STANDARD: "large",
        DetailLevel.MORE_DETAIL: "large",
        DetailLevel.MAX_DETAIL: "turbo",
    },
}


@dataclass(frozen=True)
class ModelSelection:
    """Either an explicit model or an auto choice biased by detail level.

    Build with ``ModelSelection.explicit("large")`` or
    ``ModelSelection.auto(DetailLevel.STANDARD)``.
    """
    model: Optional[str] = None
    detail_level: Optional[DetailLevel] = None

    def __post_init__(self):
        if (self.model is None) == (self.detail_level is None):
            raise ValueError("ModelSelection needs exactly one of model or detail_level")

    @classmethod
    def explicit(cls, model: str) -> "ModelSelection":
        MODEL_COST_TABLE.get_model(model)
        return cls(model=model)

    @classmethod
    def auto(cls, detail_level: DetailLevel = DetailLevel.STANDARD) -> "ModelSelection":
        return cls(detail_level=detail_level)

    @property
    def is_auto(self) -> bool:
        return self.detail_level is not None


def is_model_available(model: str, tier: Optional[Tier]) -> bool:
    """True iff ``tier`` meets the model's minimum tier.

    Guests (``tier=None``) can preview costs but have no models available.
    """
    config = MODEL_COST_TABLE.get_model(model)
    if tier is None:
        return False
    return tier.at_least(config.min_tier)


def get_default_model_for_tier(
    tier: Tier,
    detail_level: DetailLevel = DetailLevel.STANDARD,
    table: Optional[Dict[Tier, Dict[DetailLevel, str]]] = None
) -> str:
    """Look up the auto model for a tier and detail level."""
    table = table if table is not None else DEFAULT_MODEL_TABLE
    try:
        return table[tier][detail_level]
    except KeyError:
        raise ValueError(f"No default model for {tier.value}/{detail_level.value}")


def resolve_model_selection(
    selection: ModelSelection,
    tier: Optional[Tier],
    table: Optional[Dict[Tier, Dict[DetailLevel, str]]] = None
) -> str:
    """Resolve a selection to a concrete model id.

    Guests resolving auto get the free tier's choice.
    """
    if not selection.is_auto:
        return selection.model
    return get_default_model_for_tier(tier or Tier.FREE, selection.detail_level, table)


def check_generation_eligibility(
    model: str,
    tier: Optional[Tier],
    controls: Iterable[str] = ()
) -> None:
    """Raise TierNotEligible if the model or any control is locked for ``tier``."""
    config = MODEL_COST_TABLE.get_model(model)
    if tier is None or not tier.at_least(config.min_tier):
        raise TierNotEligible(f"Model '{model}'", config.min_tier, tier)
    for control in controls:
        control_config = MODEL_COST_TABLE.get_control(control)
        if not tier.at_least(control_config.min_tier):
            raise TierNotEligible(f"Control '{control}'", control_config.min_tier, tier)


def get_generation_cost(model: str, controls: Iterable[str] = ()) -> int:
    """INK cost of one generation: model base cost plus control adders.

    Raises:
        ValueError: If model or a control tool is not supported
    """
    cost = MODEL_COST_TABLE.get_model(model).base_ink_cost
    for control in controls:
        cost += MODEL_COST_TABLE.get_control(control).ink_adder
    return cost


def get_regeneration_cost(
    model: str,
    controls: Iterable[str] = (),
    last_generated_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    window_minutes: int = 15,
    discount_percent: int = 50
) -> int:
    """Cost of regenerating, discounted inside the regenerate window.

    Discounted costs round UP to whole INK.
    """
    cost = get_generation_cost(model, controls)
    if last_generated_at is None:
        return cost
    now = now or datetime.now()
    if now - last_generated_at > timedelta(minutes=window_minutes):
        return cost
    return math.ceil(cost * (100 - discount_percent) / 100)


def get_variations_bundle_cost(
    model: str,
    controls: Iterable[str] = (),
    count: int = 3,
    pay_for_count: int = 2
) -> int:
    """Cost of a reseed bundle: ``count`` variations billed as ``pay_for_count``."""
    if pay_for_count > count:
        raise ValueError("pay_for_count cannot exceed count")
    return get_generation_cost(model, controls) * pay_for_count


@dataclass(frozen=True)
class TokenPack:
    """One-off INK pack sold outside a subscription."""
    id: str
    name: str
    ink: int
    price_usd: float
    expiry_days: int

    @property
    def per_ink_cost(self) -> float:
        return round(self.price_usd / self.ink, 3)


TOKEN_PACKS: Dict[str, TokenPack] = {
    "starter": TokenPack("starter", "Starter", 80, 4.99, 180),
    "small": TokenPack("small", "Small", 200, 9.00, 180),
    "medium": TokenPack("medium", "Medium", 600, 24.00, 180),
    "large": TokenPack("large", "Large", 1500, 49.00, 180),
    "session-booster": TokenPack("session-booster", "Session Booster", 120, 5.99, 30),
}


def get_token_pack(pack_id: str) -> TokenPack:
    if pack_id not in TOKEN_PACKS:
        raise ValueError(f"Unsupported token pack: {pack_id}")
    return TOKEN_PACKS[pack_id]


def format_ink_balance(ink: int, tier: Optional[Tier]) -> str:
    """Human-readable balance with a rough count of generations left."""
    flash_count = ink // MODEL_COST_TABLE.get_model("flash").base_ink_cost
    if tier == Tier.STUDIO:
        turbo_count = ink // MODEL_COST_TABLE.get_model("turbo").base_ink_cost
        return f"{ink} INK - ~{flash_count} Flash or {turbo_count} Turbo left"
    if tier == Tier.CREATOR:
        large_count = ink // MODEL_COST_TABLE.get_model("large").base_ink_cost
        return f"{ink} INK - ~{flash_count} Flash or {large_count} Large left"
    return f"{ink} INK - ~{flash_count} Flash generations left"
