"""
Read-only affordability checks.

Projections over a ledger snapshot that UI code calls before committing to
a paid action. Checks run in a fixed order:

1. Tier eligibility - locked models, controls and actions raise TierNotEligible
2. Cost resolution - model/control pricing or the action's allowance rules
3. Balance comparison - whether the session can pay

Nothing here mutates the ledger.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, Mapping, Optional

from ink_economy.config.loader import DiscountPolicy
from ink_economy.storage.models import LedgerState
from .actions import ActionCost, FREE, cost_as_ink, get_action_cost, get_action_config
from .errors import validate_amount
from .pricing import (
    DEFAULT_MODEL_TABLE,
    DetailLevel,
    ModelSelection,
    check_generation_eligibility,
    get_generation_cost,
    get_regeneration_cost,
    get_variations_bundle_cost,
    resolve_model_selection,
)
from .tiers import TIER_CATALOG, Tier, TierCatalog


@dataclass(frozen=True)
class Quote:
    """Cost and verdict for a prospective paid action."""
    cost: int
    affordable: bool
    shortfall: int = 0
    model: Optional[str] = None
    free: bool = False


class AffordabilityGate:
    """Stateless projections over a ledger snapshot.

    Args:
        state: Ledger state to read, or None for an unauthenticated preview
        catalog: Tier catalog for included allowances
        default_models: Auto model table
        today: Current date; daily usage recorded on another day is ignored
        discounts: Regenerate and reseed bundle terms
    """

    def __init__(
        self,
        state: Optional[LedgerState],
        catalog: TierCatalog = TIER_CATALOG,
        default_models: Optional[Dict[Tier, Dict[DetailLevel, str]]] = None,
        today: Optional[date] = None,
        discounts: Optional[DiscountPolicy] = None
    ):
        self._state = state
        self._catalog = catalog
        self._default_models = default_models if default_models is not None else DEFAULT_MODEL_TABLE
        self._today = today
        self._discounts = discounts if discounts is not None else DiscountPolicy()

    @property
    def tier(self) -> Optional[Tier]:
        return self._state.tier if self._state is not None else None

    @property
    def balance(self) -> int:
        return self._state.balance if self._state is not None else 0

    def can_afford(self, cost: int) -> bool:
        """True if the session could pay ``cost`` right now.

        Guests can never afford anything.

        Raises:
            InvalidAmount: If cost is negative or not an integer
        """
        validate_amount(cost)
        if self._state is None:
            return False
        return self._state.balance >= cost

    def preview_generation_cost(
        self,
        model: str,
        tier: Optional[Tier] = None,
        controls: Iterable[str] = ()
    ) -> int:
        """Cost of a generation for ``tier``.

        With ``tier=None`` the price is shown without a tier check, which is
        how guests browse models.

        Raises:
            TierNotEligible: If ``tier`` is given and the model or a control is locked
        """
        controls = tuple(controls)
        if tier is not None:
            check_generation_eligibility(model, tier, controls)
        return get_generation_cost(model, controls)

    def preview_action_cost(
        self,
        action_id: str,
        tier: Optional[Tier] = None,
        usage_today: Optional[Mapping[str, int]] = None
    ) -> ActionCost:
        """Cost of an action for ``tier``; guests see the free-tier price.

        Raises:
            TierNotEligible: If ``tier`` is given and the action is locked
        """
        if tier is None:
            config = get_action_config(action_id)
            return config.costs[Tier.FREE]
        usage_cycle = self._state.usage_cycle if self._state is not None else None
        return get_action_cost(action_id, tier, usage_today, usage_cycle, self._catalog)

    def quote_generation(
        self,
        selection: ModelSelection,
        controls: Iterable[str] = ()
    ) -> Quote:
        """Resolve a model selection and quote it against this session.

        Raises:
            TierNotEligible: If the resolved model or a control is locked
        """
        model = resolve_model_selection(selection, self.tier, self._default_models)
        cost = self.preview_generation_cost(model, self.tier, controls)
        if self._state is None:
            return Quote(cost=cost, affordable=False, shortfall=cost, model=model)
        return self._quote(cost, model=model)

    def quote_regeneration(
        self,
        model: str,
        controls: Iterable[str] = (),
        last_generated_at: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Quote:
        """Quote regenerating with ``model``, discounted inside the regenerate window.

        Raises:
            TierNotEligible: If the model or a control is locked
        """
        controls = tuple(controls)
        self.preview_generation_cost(model, self.tier, controls)
        cost = get_regeneration_cost(
            model,
            controls,
            last_generated_at,
            now,
            self._discounts.regenerate_window_minutes,
            self._discounts.regenerate_discount_percent,
        )
        if self._state is None:
            return Quote(cost=cost, affordable=False, shortfall=cost, model=model)
        return self._quote(cost, model=model)

    def quote_variations(
        self,
        selection: ModelSelection,
        controls: Iterable[str] = ()
    ) -> Quote:
        """Quote a reseed bundle for a model selection.

        Raises:
            TierNotEligible: If the resolved model or a control is locked
        """
        controls = tuple(controls)
        model = resolve_model_selection(selection, self.tier, self._default_models)
        self.preview_generation_cost(model, self.tier, controls)
        cost = get_variations_bundle_cost(
            model, controls, self._discounts.reseed_count, self._discounts.reseed_pay_for
        )
        if self._state is None:
            return Quote(cost=cost, affordable=False, shortfall=cost, model=model)
        return self._quote(cost, model=model)

    def quote_action(self, action_id: str) -> Quote:
        """Quote an action against this session's tier and usage.

        Raises:
            TierNotEligible: If the action is locked for the session's tier
        """
        if self._state is None:
            cost = cost_as_ink(self.preview_action_cost(action_id))
            return Quote(cost=cost, affordable=False, shortfall=cost)
        resolved = self.preview_action_cost(action_id, self._state.tier, self._usage_today())
        return self._quote(cost_as_ink(resolved), free=resolved is FREE)

    def _usage_today(self) -> Mapping[str, int]:
        if self._today is not None and self._state.usage_date != self._today:
            return {}
        return self._state.usage_today

    def _quote(self, cost: int, model: Optional[str] = None, free: bool = False) -> Quote:
        balance = self._state.balance
        if balance >= cost:
            return Quote(cost=cost, affordable=True, model=model, free=free)
        return Quote(cost=cost, affordable=False, shortfall=cost - balance, model=model, free=free)
