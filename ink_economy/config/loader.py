"""
Economy policy loading.

Holds the numeric policy (bonuses, billing period, discounts, tier grants,
default models) and loads overrides from YAML.
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict

import yaml

from ink_economy.core.pricing import DEFAULT_MODEL_TABLE, DetailLevel, MODEL_COST_TABLE
from ink_economy.core.tiers import TIER_CATALOG, Tier, TierCatalog


@dataclass(frozen=True)
class BonusPolicy:
    """INK bonuses for sign-up, streaks, shares and referrals."""
    signup: int = 100
    streak_per_day: int = 5
    streak_weekly_cap: int = 25
    streak_window_days: int = 7
    share: int = 4
    share_per_day: int = 1
    referral: int = 100

    def __post_init__(self):
        if self.streak_window_days <= 0:
            raise ValueError("streak_window_days must be > 0")
        if self.share_per_day <= 0:
            raise ValueError("share_per_day must be > 0")


@dataclass(frozen=True)
class BillingPolicy:
    """Billing cycle and ledger bookkeeping."""
    period_days: int = 30
    history_limit: int = 200
    max_conflict_retries: int = 3

    def __post_init__(self):
        if self.period_days <= 0:
            raise ValueError("period_days must be > 0")
        if self.history_limit <= 0:
            raise ValueError("history_limit must be > 0")
        if self.max_conflict_retries <= 0:
            raise ValueError("max_conflict_retries must be > 0")


@dataclass(frozen=True)
class DiscountPolicy:
    """Regenerate discount and reseed bundle terms."""
    regenerate_window_minutes: int = 15
    regenerate_discount_percent: int = 50
    reseed_count: int = 3
    reseed_pay_for: int = 2

    def __post_init__(self):
        if self.regenerate_discount_percent > 100:
            raise ValueError("regenerate_discount_percent must be <= 100")
        if self.reseed_pay_for > self.reseed_count:
            raise ValueError("reseed_pay_for cannot exceed reseed_count")


@dataclass(frozen=True)
class EconomyPolicy:
    """Complete economy policy."""
    bonuses: BonusPolicy = field(default_factory=BonusPolicy)
    billing: BillingPolicy = field(default_factory=BillingPolicy)
    discounts: DiscountPolicy = field(default_factory=DiscountPolicy)
    catalog: TierCatalog = TIER_CATALOG
    default_models: Dict[Tier, Dict[DetailLevel, str]] = field(
        default_factory=lambda: {tier: dict(levels) for tier, levels in DEFAULT_MODEL_TABLE.items()}
    )

    def signup_grant(self, tier: Tier) -> int:
        """Opening balance for a brand-new account."""
        return self.catalog.monthly_ink(tier) + self.bonuses.signup

    def rollover_cap(self, tier: Tier) -> int:
        return self.catalog.get_features(tier).rollover_cap(self.billing.period_days)


DEFAULT_POLICY = EconomyPolicy()

_SECTION_KEYS = {
    "bonuses": {f.name for f in fields(BonusPolicy)},
    "billing": {f.name for f in fields(BillingPolicy)},
    "discounts": {f.name for f in fields(DiscountPolicy)},
}
_TIER_KEYS = {"monthly_ink", "rollover_days", "included_upscales"}


def load_economy_policy(path: str) -> EconomyPolicy:
    """Load and validate an economy policy from a YAML file.

    Every section is optional; omitted values keep the defaults. Unknown keys
    are rejected so a typo never silently changes pricing.

    Args:
        path: Path to YAML policy file

    Returns:
        Validated EconomyPolicy

    Raises:
        FileNotFoundError: If policy file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If policy is invalid
    """
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Economy policy file not found: {path}")

    with open(policy_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in policy file {path}: {e}")

    if not raw:
        raise ValueError("Policy file is empty")
    if not isinstance(raw, dict):
        raise ValueError("Policy file must contain a mapping")

    return parse_economy_policy(raw)


def parse_economy_policy(raw: Dict[str, Any]) -> EconomyPolicy:
    """Validate a policy mapping and build an EconomyPolicy."""
    allowed_top_keys = set(_SECTION_KEYS) | {"tiers", "default_models"}
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown policy keys: {unknown_keys}")

    bonuses = BonusPolicy(**_parse_int_section(raw, "bonuses"))
    billing = BillingPolicy(**_parse_int_section(raw, "billing"))
    discounts = DiscountPolicy(**_parse_int_section(raw, "discounts"))

    return EconomyPolicy(
        bonuses=bonuses,
        billing=billing,
        discounts=discounts,
        catalog=_parse_tiers(raw.get("tiers") or {}),
        default_models=_parse_default_models(raw.get("default_models") or {}),
    )


def _parse_int_section(raw: Dict[str, Any], section: str) -> Dict[str, int]:
    data = raw.get(section, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{section}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[section]
    if unknown_keys:
        raise ValueError(f"Unknown {section} keys: {unknown_keys}")

    return {key: _non_negative_int(value, f"{section}.{key}") for key, value in data.items()}


def _non_negative_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"'{path}' must be a non-negative integer")
    return value


def _parse_tier(name: Any, path: str) -> Tier:
    try:
        return Tier(str(name).lower())
    except ValueError:
        valid_tiers = [tier.value for tier in Tier]
        raise ValueError(f"Unknown tier '{name}' in {path}; must be one of: {valid_tiers}")


def _parse_tiers(data: Any) -> TierCatalog:
    """Apply per-tier overrides on top of the default catalog."""
    if not isinstance(data, dict):
        raise ValueError("'tiers' must be a dictionary")

    tiers = dict(TIER_CATALOG.tiers)
    for name, overrides in data.items():
        tier = _parse_tier(name, "tiers")
        if not isinstance(overrides, dict):
            raise ValueError(f"Tier '{name}' must be a dictionary")
        unknown_keys = set(overrides.keys()) - _TIER_KEYS
        if unknown_keys:
            raise ValueError(f"Unknown keys in tiers.{name}: {unknown_keys}")
        values = {
            key: _non_negative_int(value, f"tiers.{name}.{key}")
            for key, value in overrides.items()
        }
        tiers[tier] = replace(tiers[tier], **values)
    return TierCatalog(tiers)


def _parse_default_models(data: Any) -> Dict[Tier, Dict[DetailLevel, str]]:
    """Apply per-tier, per-detail-level overrides to the default model table."""
    if not isinstance(data, dict):
        raise ValueError("'default_models' must be a dictionary")

    table = {tier: dict(levels) for tier, levels in DEFAULT_MODEL_TABLE.items()}
    for name, levels in data.items():
        tier = _parse_tier(name, "default_models")
        if not isinstance(levels, dict):
            raise ValueError(f"default_models.{name} must be a dictionary")
        for level_name, model in levels.items():
            try:
                level = DetailLevel(level_name)
            except ValueError:
                valid_levels = [level.value for level in DetailLevel]
                raise ValueError(
                    f"Unknown detail level '{level_name}' in default_models.{name}; "
                    f"must be one of: {valid_levels}"
                )
            if model not in MODEL_COST_TABLE.models:
                raise ValueError(f"Unsupported model '{model}' in default_models.{name}")
            if not tier.at_least(MODEL_COST_TABLE.get_model(model).min_tier):
                raise ValueError(
                    f"Model '{model}' is not available to the {tier.value} tier "
                    f"(default_models.{name}.{level_name})"
                )
            table[tier][level] = model
    return table
