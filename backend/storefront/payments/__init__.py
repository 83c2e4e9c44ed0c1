"""Provider adapters: one per payment rail, behind a shared contract."""

from .base import (
    BaseProviderAdapter,
    BuyerContext,
    CreatedAttempt,
    ProviderAdapter,
    ProviderStatus,
    ShippingAddress,
    VerifiedEvent,
)
from .factory import build_adapters

__all__ = [
    "BaseProviderAdapter",
    "BuyerContext",
    "CreatedAttempt",
    "ProviderAdapter",
    "ProviderStatus",
    "ShippingAddress",
    "VerifiedEvent",
    "build_adapters",
]
