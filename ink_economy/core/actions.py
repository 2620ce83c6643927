"""
Pricing for non-generation paid actions.

Covers Ask TaTTTy assists (optimize, idea, brainstorm) and post-generation
edits (upscales, inpaint, outpaint, background tools). Some actions are free
up to a per-tier allowance; once it is used up the same action costs INK.

The resolver is pure: it reads usage counters but never updates them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional, Union

from .errors import TierNotEligible
from .tiers import TIER_CATALOG, Tier, TierCatalog


class _Free:
    """Sentinel for an action that costs nothing right now."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "FREE"

    def __bool__(self) -> bool:
        return False


FREE = _Free()

ActionCost = Union[int, _Free]


class ActionKind(Enum):
    ASK_TATTTY = "ask-tattty"
    EDIT = "edit"


class AllowancePeriod(Enum):
    """How often a free allowance resets."""
    DAY = "day"
    CYCLE = "cycle"  # billing cycle, reset at renewal


@dataclass(frozen=True)
class ActionConfig:
    """Per-tier pricing for a paid action.

    ``costs`` maps each tier to an INK cost or FREE. ``allowances`` maps a
    tier to the number of usage units that are free before ``overage_cost``
    applies. A tier with no allowance entry pays ``costs`` unconditionally.
    """
    id: str
    name: str
    kind: ActionKind
    costs: Dict[Tier, ActionCost]
    min_tier: Tier = Tier.FREE
    allowances: Dict[Tier, int] = field(default_factory=dict)
    overage_cost: int = 0
    allowance_period: AllowancePeriod = AllowancePeriod.DAY
    usage_units: int = 1  # units consumed per call, e.g. 10 brainstorm messages


def _flat(cost: int) -> Dict[Tier, ActionCost]:
    return {tier: cost for tier in Tier}


ACTION_CONFIGS: Dict[str, ActionConfig] = {
    "optimize": ActionConfig(
        id="optimize",
        name="Optimize Prompt",
        kind=ActionKind.ASK_TATTTY,
        costs={Tier.FREE: 3, Tier.CREATOR: FREE, Tier.STUDIO: FREE},
    ),
    "idea": ActionConfig(
        id="idea",
        name="Idea",
        kind=ActionKind.ASK_TATTTY,
        costs={Tier.FREE: 5, Tier.CREATOR: 1, Tier.STUDIO: FREE},
        allowances={Tier.STUDIO: 50},
        overage_cost=1,
    ),
    "brainstorm": ActionConfig(
        id="brainstorm",
        name="Brainstorm (10 messages)",
        kind=ActionKind.ASK_TATTTY,
        costs={Tier.FREE: 8, Tier.CREATOR: 2, Tier.STUDIO: FREE},
        allowances={Tier.STUDIO: 200},
        overage_cost=1,
        usage_units=10,
    ),
    "upscale-2x-fast": ActionConfig(
        id="upscale-2x-fast",
        name="2x Upscale (Fast)",
        kind=ActionKind.EDIT,
        costs=_flat(4),
        allowance_period=AllowancePeriod.CYCLE,
        overage_cost=4,
    ),
    "upscale-2x-conservative": ActionConfig(
        id="upscale-2x-conservative",
        name="2x Upscale (Conservative)",
        kind=ActionKind.EDIT,
        costs=_flat(4),
        allowance_period=AllowancePeriod.CYCLE,
        overage_cost=4,
    ),
    "upscale-4x-creative": ActionConfig(
        id="upscale-4x-creative",
        name="4x Upscale (Creative)",
        kind=ActionKind.EDIT,
        costs=_flat(6),
    ),
    "inpaint": ActionConfig("inpaint", "Inpaint", ActionKind.EDIT, _flat(8)),
    "outpaint": ActionConfig("outpaint", "Outpaint", ActionKind.EDIT, _flat(8)),
    "erase": ActionConfig("erase", "Erase", ActionKind.EDIT, _flat(8)),
    "remove-background": ActionConfig(
        "remove-background", "Remove Background", ActionKind.EDIT, _flat(8)
    ),
    "replace-background": ActionConfig(
        "replace-background", "Replace Background", ActionKind.EDIT, _flat(8)
    ),
    "relight": ActionConfig(
        "relight", "Relight", ActionKind.EDIT, _flat(8), min_tier=Tier.CREATOR
    ),
}

# 2x upscales draw on the tier's included upscales for the billing cycle
INCLUDED_UPSCALE_ACTIONS = frozenset({"upscale-2x-fast", "upscale-2x-conservative"})

# Included upscales share one counter across both 2x variants
UPSCALE_USAGE_KEY = "upscale-2x"


def get_action_config(action_id: str) -> ActionConfig:
    """Get the config for an action.

    Raises:
        ValueError: If action is not supported
    """
    if action_id not in ACTION_CONFIGS:
        raise ValueError(f"Unsupported action: {action_id}")
    return ACTION_CONFIGS[action_id]


def usage_key(action_id: str) -> str:
    """Counter name an action's usage is recorded under."""
    if action_id in INCLUDED_UPSCALE_ACTIONS:
        return UPSCALE_USAGE_KEY
    return action_id


def _allowance_for(config: ActionConfig, tier: Tier, catalog: TierCatalog) -> Optional[int]:
    if config.id in INCLUDED_UPSCALE_ACTIONS:
        included = catalog.get_features(tier).included_upscales
        return included if included > 0 else None
    return config.allowances.get(tier)


def check_action_eligibility(action_id: str, tier: Optional[Tier]) -> ActionConfig:
    """Return the action config, raising TierNotEligible if ``tier`` is too low."""
    config = get_action_config(action_id)
    if tier is None or not tier.at_least(config.min_tier):
        raise TierNotEligible(f"Action '{action_id}'", config.min_tier, tier)
    return config


def get_action_cost(
    action_id: str,
    tier: Tier,
    usage_today: Optional[Mapping[str, int]] = None,
    usage_cycle: Optional[Mapping[str, int]] = None,
    catalog: TierCatalog = TIER_CATALOG
) -> ActionCost:
    """Resolve the cost of one call to ``action_id`` for ``tier``.

    Args:
        action_id: Action identifier
        tier: Session tier
        usage_today: Units used today, keyed by usage key
        usage_cycle: Units used this billing cycle, keyed by usage key
        catalog: Tier catalog providing included upscales

    Returns:
        INK cost, or FREE while an allowance lasts

    Raises:
        ValueError: If action is not supported
        TierNotEligible: If the tier is below the action's minimum tier
    """
    config = check_action_eligibility(action_id, tier)

    allowance = _allowance_for(config, tier, catalog)
    if allowance is None:
        return config.costs[tier]

    if config.allowance_period == AllowancePeriod.CYCLE:
        usage = usage_cycle or {}
    else:
        usage = usage_today or {}
    used = usage.get(usage_key(action_id), 0)
    if used + config.usage_units <= allowance:
        return FREE
    return config.overage_cost


def cost_as_ink(cost: ActionCost) -> int:
    """INK to deduct for a resolved cost; FREE deducts nothing."""
    if cost is FREE:
        return 0
    return cost


def get_ask_tattty_action_cost(
    action_id: str,
    tier: Tier,
    usage_today: Optional[Mapping[str, int]] = None
) -> ActionCost:
    """Cost of an Ask TaTTTy assist."""
    if get_action_config(action_id).kind != ActionKind.ASK_TATTTY:
        raise ValueError(f"Not an Ask TaTTTy action: {action_id}")
    return get_action_cost(action_id, tier, usage_today)


def get_edit_action_cost(
    action_id: str,
    tier: Tier,
    usage_cycle: Optional[Mapping[str, int]] = None,
    catalog: TierCatalog = TIER_CATALOG
) -> ActionCost:
    """Cost of a post-generation edit."""
    if get_action_config(action_id).kind != ActionKind.EDIT:
        raise ValueError(f"Not an edit action: {action_id}")
    return get_action_cost(action_id, tier, None, usage_cycle, catalog)


def get_upscale_cost(
    scale: str,
    tier: Tier,
    usage_cycle: Optional[Mapping[str, int]] = None,
    catalog: TierCatalog = TIER_CATALOG
) -> ActionCost:
    """Cost of an upscale by factor; 4x upscales are never included."""
    if scale == "4x":
        return get_edit_action_cost("upscale-4x-creative", tier, usage_cycle, catalog)
    if scale == "2x":
        return get_edit_action_cost("upscale-2x-fast", tier, usage_cycle, catalog)
    raise ValueError(f"Unsupported upscale factor: {scale}")
