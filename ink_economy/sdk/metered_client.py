"""
INK-metered generation client.

Brackets every paid provider call with a deduction and, if the call fails,
a refund of exactly the amount deducted.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

from openai import OpenAI

from ..core.ledger import LedgerEngine
from ..core.pricing import ModelSelection
from ..storage.models import Transaction

logger = logging.getLogger(__name__)


class ImageProvider(Protocol):
    """Anything that can turn a prompt into an image for a model id."""

    def generate(self, prompt: str, model: str, **kwargs: Any) -> Any:
        ...


# INK model id -> (OpenAI image model, quality)
OPENAI_MODEL_MAP: Dict[str, Tuple[str, str]] = {
    "flash": ("gpt-image-1", "low"),
    "medium": ("gpt-image-1", "medium"),
    "large": ("gpt-image-1", "high"),
    "turbo": ("gpt-image-1", "high"),
}


class OpenAIImageProvider:
    """Image provider backed by the OpenAI Images API."""

    def __init__(
        self,
        client: Optional[OpenAI] = None,
        model_map: Optional[Dict[str, Tuple[str, str]]] = None,
        size: str = "1024x1024"
    ):
        self.client = client or OpenAI()
        self.model_map = model_map if model_map is not None else OPENAI_MODEL_MAP
        self.size = size

    def generate(self, prompt: str, model: str, **kwargs: Any) -> Any:
        if model not in self.model_map:
            raise ValueError(f"No OpenAI mapping for model: {model}")
        openai_model, quality = self.model_map[model]
        size = kwargs.pop("size", self.size)
        return self.client.images.generate(
            model=openai_model,
            prompt=prompt,
            quality=quality,
            size=size,
            **kwargs
        )


@dataclass(frozen=True)
class MeteredResult:
    """Provider response plus the INK transaction that paid for it."""
    response: Any
    transaction: Transaction
    balance: int

    @property
    def cost(self) -> int:
        return -self.transaction.amount


class MeteredImageClient:
    """Generation client that pays in INK.

    A call deducts first and only then reaches the provider. Any provider
    failure is refunded in full before the error propagates.

    Args:
        engine: Ledger engine of the signed-in session
        provider: Image provider (defaults to OpenAIImageProvider)
    """

    def __init__(self, engine: LedgerEngine, provider: Optional[ImageProvider] = None):
        if engine is None:
            raise ValueError("engine is required")
        self.engine = engine
        self.provider = provider or OpenAIImageProvider()

    def generate(
        self,
        prompt: str,
        selection: Optional[ModelSelection] = None,
        controls: Iterable[str] = (),
        **kwargs: Any
    ) -> MeteredResult:
        """Charge for and run one generation.

        Raises:
            ValueError: If prompt is empty
            TierNotEligible: If the model or a control is locked for the tier
            InsufficientBalance: If the balance cannot cover the cost
            Provider errors: Propagated after the refund
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        selection = selection or ModelSelection.auto()

        result = self.engine.charge_generation(selection, controls)
        result.raise_for_shortfall()
        transaction = result.transaction
        model = transaction.metadata["model"]

        response = self._call_or_refund(
            transaction, lambda: self.provider.generate(prompt=prompt, model=model, **kwargs)
        )
        return MeteredResult(response=response, transaction=transaction, balance=self.engine.balance)

    def run_action(self, action_id: str, call: Callable[[], Any]) -> MeteredResult:
        """Charge for an Ask TaTTTy or edit action and run ``call``.

        Raises:
            TierNotEligible: If the action is locked for the tier
            InsufficientBalance: If the balance cannot cover the cost
            Errors from ``call``: Propagated after the refund
        """
        result = self.engine.charge_action(action_id)
        result.raise_for_shortfall()
        response = self._call_or_refund(result.transaction, call)
        return MeteredResult(
            response=response, transaction=result.transaction, balance=self.engine.balance
        )

    def _call_or_refund(self, transaction: Transaction, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except Exception as e:
            logger.warning("Paid call %s failed, refunding: %s", transaction.id, e)
            self.engine.refund(transaction.id, reason=f"{type(e).__name__}: {e}")
            raise
