"""
Stripe payment strategy.

Implements:
- Idempotent PaymentIntent creation (amounts in cents)
- Webhook signature verification (fails closed)
- Pull verification by PaymentIntent id
- Error classification for retry logic
"""
import asyncio
import json
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog

from core.errors import ErrorKind, ProviderError
from core.money import to_minor_units
from database.models import PaymentProvider, PaymentStatus
from integrations.base import Inbound, ProviderResult, PullInbound, WebhookInbound
from integrations.resilience import CircuitBreaker, call_provider

logger = structlog.get_logger(__name__)

T = TypeVar("T")

INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.COMPLETED,
    "canceled": PaymentStatus.CANCELED,
    "processing": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_capture": PaymentStatus.PENDING,
}

WEBHOOK_EVENT_MAP = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELED,
}


def map_intent_status(status: Optional[str]) -> PaymentStatus:
    """Map a PaymentIntent status onto the canonical vocabulary."""
    if status is None:
        return PaymentStatus.PENDING
    return INTENT_STATUS_MAP.get(status, PaymentStatus.PENDING)


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return dict(obj)


class StripeStrategy:
    """
    Stripe PaymentIntent strategy.

    Blocking SDK calls run in a worker thread, bounded by
    ``timeout_seconds`` per attempt.
    """

    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        api_version: str,
        currency: str = "usd",
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_wait_multiplier: float = 0.5,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.currency = currency.lower()
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.retry_wait_multiplier = retry_wait_multiplier
        self.circuit_breaker = circuit_breaker or CircuitBreaker("stripe")

        logger.info(
            "stripe_strategy_initialized",
            api_version=api_version,
            test_mode=secret_key.startswith("sk_test_"),
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> ProviderError:
        """
        Classify a Stripe SDK error for retry logic.

        Rate limits, connection problems and Stripe-side API errors are
        transient; card declines, invalid requests and auth errors are not.
        """
        if isinstance(
            error,
            (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError),
        ):
            transient = True
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError),
        ):
            transient = False
        else:
            # Unknown errors are treated as transient
            transient = True

        logger.error(
            "stripe_api_error",
            transient=transient,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        return ProviderError(
            f"Stripe error: {error.user_message or str(error)}",
            transient=transient,
            code=getattr(error, "code", None),
        )

    async def _call(self, operation: str, func: Callable[..., T], **kwargs: Any) -> T:
        async def _run() -> T:
            try:
                return await asyncio.to_thread(
                    func,
                    api_key=self.secret_key,
                    stripe_version=self.api_version,
                    **kwargs,
                )
            except stripe.StripeError as e:
                raise self._classify_error(e) from e

        return await call_provider(
            operation,
            _run,
            self.circuit_breaker,
            timeout_seconds=self.timeout_seconds,
            max_attempts=self.max_attempts,
            wait_multiplier=self.retry_wait_multiplier,
        )

    async def create_intent(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderResult:
        """
        Create a PaymentIntent for an order.

        The idempotency key is fixed for the whole attempt, so retries of
        a lost response return the same intent instead of a second one.

        Args:
            order_id: Order being paid
            amount: Order total (two decimals)
            metadata: Extra metadata forwarded to Stripe

        Returns:
            ProviderResult: intent id and canonical status, or a failure
        """
        amount_cents = to_minor_units(amount)
        idempotency_key = f"order_{order_id}_{uuid.uuid4().hex}"
        intent_metadata = {key: str(value) for key, value in (metadata or {}).items()}
        intent_metadata["order_id"] = str(order_id)

        logger.info(
            "creating_payment_intent",
            order_id=str(order_id),
            amount_cents=amount_cents,
            currency=self.currency,
            idempotency_key=idempotency_key,
        )

        try:
            intent = await self._call(
                "create_intent",
                stripe.PaymentIntent.create,
                amount=amount_cents,
                currency=self.currency,
                metadata=intent_metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except ProviderError as e:
            return ProviderResult.from_error(e)

        logger.info(
            "payment_intent_created",
            order_id=str(order_id),
            payment_intent_id=intent["id"],
            status=intent["status"],
        )
        return ProviderResult.ok(
            transaction_id=intent["id"],
            status=map_intent_status(intent["status"]),
            raw_payload=_as_dict(intent),
        )

    async def settle(self, inbound: Inbound) -> ProviderResult:
        if isinstance(inbound, WebhookInbound):
            return self._parse_webhook(inbound)
        if isinstance(inbound, PullInbound):
            return await self._verify(inbound.transaction_id)
        return ProviderResult.failed(
            f"Unsupported inbound type: {type(inbound).__name__}",
            error_kind=ErrorKind.VALIDATION,
        )

    def _parse_webhook(self, inbound: WebhookInbound) -> ProviderResult:
        """
        Verify the Stripe-Signature header and extract the intent outcome.

        Events other than the three PaymentIntent outcomes are returned
        as a non-terminal result so the caller acknowledges and ignores
        them.
        """
        if not inbound.signature:
            logger.warning("stripe_webhook_missing_signature")
            return ProviderResult.failed(
                "Missing Stripe-Signature header", error_kind=ErrorKind.VALIDATION
            )

        try:
            event = stripe.Webhook.construct_event(
                payload=inbound.raw_body,
                sig_header=inbound.signature,
                secret=self.webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("stripe_webhook_signature_invalid", error=str(e))
            return ProviderResult.failed(
                "Invalid Stripe webhook signature", error_kind=ErrorKind.VALIDATION
            )
        except ValueError as e:
            logger.error("stripe_webhook_payload_invalid", error=str(e))
            return ProviderResult.failed(
                "Malformed Stripe webhook payload", error_kind=ErrorKind.VALIDATION
            )

        event_type = event["type"]
        data_object = event["data"]["object"]
        transaction_id = data_object.get("id")
        raw_payload = _as_dict(event)

        status = WEBHOOK_EVENT_MAP.get(event_type)
        if status is None:
            # Not a PaymentIntent outcome; the object may not even have an id
            logger.info(
                "stripe_webhook_unhandled_event",
                event_id=event["id"],
                event_type=event_type,
            )
            return ProviderResult.ok(
                transaction_id=transaction_id,
                status=PaymentStatus.PENDING,
                raw_payload=raw_payload,
                event_type=event_type,
            )

        if not transaction_id:
            return ProviderResult.failed(
                f"Stripe event {event['id']} has no object id",
                error_kind=ErrorKind.VALIDATION,
            )

        message = ""
        if status is PaymentStatus.FAILED:
            last_error = data_object.get("last_payment_error") or {}
            message = last_error.get("message") or "Payment failed"

        logger.info(
            "stripe_webhook_verified",
            event_id=event["id"],
            event_type=event_type,
            transaction_id=transaction_id,
            status=status.value,
        )
        return ProviderResult.ok(
            transaction_id=transaction_id,
            status=status,
            raw_payload=raw_payload,
            event_type=event_type,
            message=message,
        )

    async def _verify(self, transaction_id: str) -> ProviderResult:
        logger.info("retrieving_payment_intent", payment_intent_id=transaction_id)
        try:
            intent = await self._call(
                "verify", stripe.PaymentIntent.retrieve, id=transaction_id
            )
        except ProviderError as e:
            return ProviderResult.from_error(e)

        status = map_intent_status(intent["status"])
        message = ""
        last_error = intent.get("last_payment_error")
        if last_error:
            message = last_error.get("message") or ""
        return ProviderResult.ok(
            transaction_id=intent["id"],
            status=status,
            raw_payload=_as_dict(intent),
            message=message,
        )

    async def close(self) -> None:
        return None
