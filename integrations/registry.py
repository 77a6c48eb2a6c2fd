"""Provider registry: selects a strategy by provider name."""
from typing import Dict, Iterable, List, Union

import structlog

from config import Settings
from core.errors import ValidationError
from database.models import PaymentProvider
from integrations.base import PaymentStrategy
from integrations.bkash_strategy import BkashStrategy
from integrations.stripe_strategy import StripeStrategy

logger = structlog.get_logger(__name__)


class StrategyRegistry:
    """Configured payment strategies keyed by provider."""

    def __init__(self, strategies: Iterable[PaymentStrategy] = ()):
        self._strategies: Dict[PaymentProvider, PaymentStrategy] = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: PaymentStrategy) -> None:
        self._strategies[PaymentProvider(strategy.provider)] = strategy

    def get(self, provider: Union[str, PaymentProvider]) -> PaymentStrategy:
        """
        Look up the strategy for a provider.

        Raises:
            ValidationError: Unknown provider or provider without credentials
        """
        name = provider.value if isinstance(provider, PaymentProvider) else str(provider)
        try:
            strategy = self._strategies.get(PaymentProvider(name.lower()))
        except ValueError:
            strategy = None
        if strategy is None:
            raise ValidationError(
                f"Unsupported or unconfigured payment provider: {name}",
                provider=name,
            )
        return strategy

    @property
    def providers(self) -> List[PaymentProvider]:
        return list(self._strategies)

    async def close(self) -> None:
        for strategy in self._strategies.values():
            await strategy.close()


def build_registry(settings: Settings) -> StrategyRegistry:
    """Register a strategy for every provider whose credentials are set."""
    registry = StrategyRegistry()

    if settings.stripe_configured:
        registry.register(
            StripeStrategy(
                secret_key=settings.stripe_secret_key,
                webhook_secret=settings.stripe_webhook_secret,
                api_version=settings.stripe_api_version,
                currency=settings.stripe_currency,
                timeout_seconds=settings.provider_timeout_seconds,
                max_attempts=settings.provider_max_attempts,
            )
        )

    if settings.bkash_configured:
        registry.register(
            BkashStrategy(
                base_url=settings.bkash_base_url,
                app_key=settings.bkash_app_key,
                app_secret=settings.bkash_app_secret,
                username=settings.bkash_username,
                password=settings.bkash_password,
                callback_url=settings.bkash_callback_url,
                currency=settings.bkash_currency,
                timeout_seconds=settings.provider_timeout_seconds,
                max_attempts=settings.provider_max_attempts,
            )
        )

    logger.info(
        "payment_providers_registered",
        providers=[provider.value for provider in registry.providers],
    )
    return registry
