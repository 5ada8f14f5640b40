"""
Billing provider registry.

    adapter = get_providers().get("stripe")
"""
from functools import lru_cache
from typing import Dict, Iterable, Optional

from app.core.errors import ValidationError
from app.services.providers.base import (
    BillingEvent,
    BillingProviderAdapter,
    CheckoutResult,
    CheckoutState,
    ProviderState,
)
from app.services.providers.polar_provider import PolarAdapter
from app.services.providers.stripe_provider import StripeAdapter


class ProviderRegistry:

    def __init__(self, adapters: Iterable[BillingProviderAdapter]):
        self._adapters: Dict[str, BillingProviderAdapter] = {a.name: a for a in adapters}

    def get(self, provider: Optional[str]) -> BillingProviderAdapter:
        adapter = self._adapters.get(provider or "")
        if adapter is None:
            raise ValidationError(f"Unknown billing provider '{provider}'")
        return adapter

    def names(self):
        return list(self._adapters)

    def __contains__(self, provider: str) -> bool:
        return provider in self._adapters


@lru_cache()
def get_providers() -> ProviderRegistry:
    """Process-wide registry built from settings (FastAPI dependency)."""
    return ProviderRegistry([StripeAdapter(), PolarAdapter()])


__all__ = [
    "BillingEvent",
    "BillingProviderAdapter",
    "CheckoutResult",
    "CheckoutState",
    "PolarAdapter",
    "ProviderRegistry",
    "ProviderState",
    "StripeAdapter",
    "get_providers",
]
