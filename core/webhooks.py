"""
Webhook ingress.

Authenticates provider notifications through the provider strategy and
funnels terminal outcomes into the settlement engine.

Acknowledgement policy:
- unverifiable payload: ``ValidationError`` (400), engine never called
- non-terminal or unrelated event: acknowledged, ignored
- settled or duplicate: acknowledged
- permanent business failure (unknown transaction, stock inconsistency,
  order state conflict): acknowledged, logged as an alert
- database failure: not acknowledged, so the provider redelivers
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError

from core.errors import ServiceError, ValidationError
from core.settlement import SettlementEngine
from integrations.base import WebhookInbound
from integrations.registry import StrategyRegistry
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    """How a webhook delivery was handled."""

    acknowledged: bool
    outcome: str  # settled, duplicate, ignored, failed, retry
    transaction_id: Optional[str] = None
    event_type: Optional[str] = None
    message: str = ""


class WebhookIngress:
    """Entry point for provider push notifications."""

    def __init__(self, registry: StrategyRegistry, settlement: SettlementEngine):
        self.registry = registry
        self.settlement = settlement

    async def handle_provider_webhook(
        self, provider: str, raw_body: bytes, signature: Optional[str]
    ) -> WebhookResult:
        """
        Verify and process one webhook delivery.

        Args:
            provider: Provider name from the webhook URL
            raw_body: Request body exactly as received
            signature: Provider signature header, if any

        Returns:
            WebhookResult: ``acknowledged`` tells the caller whether to
            answer 2xx

        Raises:
            ValidationError: Unknown provider or unverifiable payload
        """
        strategy = self.registry.get(provider)
        provider_name = strategy.provider.value

        result = await strategy.settle(WebhookInbound(raw_body=raw_body, signature=signature))
        if not result.success:
            metrics.record_webhook_event(provider_name, "rejected")
            logger.warning(
                "webhook_rejected",
                provider=provider_name,
                error=result.message,
            )
            raise ValidationError(result.message or "Webhook verification failed")

        log = logger.bind(
            provider=provider_name,
            transaction_id=result.transaction_id,
            event_type=result.event_type,
        )

        if not result.is_terminal:
            metrics.record_webhook_event(provider_name, "ignored")
            log.info("webhook_event_ignored")
            return WebhookResult(
                acknowledged=True,
                outcome="ignored",
                transaction_id=result.transaction_id,
                event_type=result.event_type,
            )

        try:
            outcome = await self.settlement.settle(
                result.transaction_id,
                result.status,
                result.raw_payload,
                message=result.message or None,
            )
        except ServiceError as e:
            metrics.record_webhook_event(provider_name, "failed")
            log.error(
                "webhook_processing_failed",
                error=e.message,
                error_kind=e.kind.value,
                alert=True,
            )
            return WebhookResult(
                acknowledged=True,
                outcome="failed",
                transaction_id=result.transaction_id,
                event_type=result.event_type,
                message=e.message,
            )
        except SQLAlchemyError as e:
            metrics.record_webhook_event(provider_name, "retry")
            log.error("webhook_settlement_unavailable", error=str(e), exc_info=True)
            return WebhookResult(
                acknowledged=False,
                outcome="retry",
                transaction_id=result.transaction_id,
                event_type=result.event_type,
                message="Settlement temporarily unavailable",
            )

        outcome_name = "settled" if outcome.applied else "duplicate"
        metrics.record_webhook_event(provider_name, outcome_name)
        log.info("webhook_processed", outcome=outcome_name, order_id=str(outcome.order_id))
        return WebhookResult(
            acknowledged=True,
            outcome=outcome_name,
            transaction_id=result.transaction_id,
            event_type=result.event_type,
        )
