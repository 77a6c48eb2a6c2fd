"""Payment provider strategies."""
from .base import (
    Inbound,
    PaymentStrategy,
    ProviderResult,
    PullInbound,
    WebhookInbound,
)
from .bkash_strategy import BkashStrategy
from .registry import StrategyRegistry, build_registry
from .stripe_strategy import StripeStrategy

__all__ = [
    "BkashStrategy",
    "Inbound",
    "PaymentStrategy",
    "ProviderResult",
    "PullInbound",
    "StrategyRegistry",
    "StripeStrategy",
    "WebhookInbound",
    "build_registry",
]
