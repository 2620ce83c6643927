"""
Subscription tiers and their INK grants.

Static catalog of what each tier includes: monthly INK, rollover window,
queue priority, available models and included upscales.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class Tier(Enum):
    """Subscription tier, ordered free < creator < studio."""
    FREE = "free"
    CREATOR = "creator"
    STUDIO = "studio"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def at_least(self, other: "Tier") -> bool:
        """True if this tier is the same as or above ``other``."""
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: str) -> "Tier":
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            valid = [tier.value for tier in cls]
            raise ValueError(f"Unsupported tier: {value!r} (expected one of {valid})")


_TIER_ORDER = (Tier.FREE, Tier.CREATOR, Tier.STUDIO)


class QueuePriority(Enum):
    """Generation queue lane for a tier."""
    STANDARD = "standard"
    PRIORITY = "priority"
    TOP = "top"


@dataclass(frozen=True)
class TierFeatures:
    """Everything a tier grants."""
    tier: Tier
    monthly_ink: int
    rollover_days: int
    queue_priority: QueuePriority
    models: FrozenSet[str]
    included_upscales: int  # 2x upscales per billing cycle
    control_tools: FrozenSet[str]
    exports_quality: str
    license: str
    price_monthly_usd: float
    price_annual_usd: float

    def __post_init__(self):
        if self.monthly_ink < 0:
            raise ValueError("monthly_ink cannot be negative")
        if self.rollover_days < 0:
            raise ValueError("rollover_days cannot be negative")
        if self.included_upscales < 0:
            raise ValueError("included_upscales cannot be negative")

    def rollover_cap(self, period_days: int = 30) -> int:
        """Largest balance that may be carried into the next cycle."""
        return self.monthly_ink * self.rollover_days // period_days


@dataclass(frozen=True)
class TierCatalog:
    """Fixed table of tier features."""
    tiers: Dict[Tier, TierFeatures]

    def get_features(self, tier: Tier) -> TierFeatures:
        """Get the features for a tier.

        Raises:
            ValueError: If the tier is not in the catalog
        """
        if tier not in self.tiers:
            raise ValueError(f"Unsupported tier: {tier}")
        return self.tiers[tier]

    def monthly_ink(self, tier: Tier) -> int:
        return self.get_features(tier).monthly_ink


TIER_CATALOG = TierCatalog({
    Tier.FREE: TierFeatures(
        tier=Tier.FREE,
        monthly_ink=60,
        rollover_days=30,
        queue_priority=QueuePriority.STANDARD,
        models=frozenset({"flash"}),
        included_upscales=0,
        control_tools=frozenset(),  # uploads allowed, controls locked
        exports_quality="low-res-watermark",
        license="personal",
        price_monthly_usd=0.0,
        price_annual_usd=0.0,
    ),
    Tier.CREATOR: TierFeatures(
        tier=Tier.CREATOR,
        monthly_ink=400,
        rollover_days=60,
        queue_priority=QueuePriority.PRIORITY,
        models=frozenset({"flash", "medium", "large"}),
        included_upscales=10,
        control_tools=frozenset({"sketch", "structure"}),
        exports_quality="full-res-no-watermark",
        license="personal",
        price_monthly_usd=12.0,
        price_annual_usd=108.0,
    ),
    Tier.STUDIO: TierFeatures(
        tier=Tier.STUDIO,
        monthly_ink=1200,
        rollover_days=60,
        queue_priority=QueuePriority.TOP,
        models=frozenset({"flash", "medium", "large", "turbo"}),
        included_upscales=40,
        control_tools=frozenset({"sketch", "structure", "style", "style-transfer"}),
        exports_quality="full-res",
        license="personal",
        price_monthly_usd=29.0,
        price_annual_usd=290.0,
    ),
})


def tier_label(tier: Optional[Tier]) -> str:
    """Display name for a tier, or 'guest' for unauthenticated sessions."""
    if tier is None:
        return "guest"
    return tier.value.capitalize()
