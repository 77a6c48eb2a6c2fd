"""
bKash tokenized checkout strategy.

bKash does not sign its notifications, so the webhook path always fails
closed; payments settle through pull verification (the checkout
callback and the reconciliation worker both end up in ``settle`` with a
``PullInbound``).
"""
import asyncio
import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from core.errors import ErrorKind, ProviderError
from core.money import format_money
from database.models import PaymentProvider, PaymentStatus
from integrations.base import Inbound, ProviderResult, PullInbound, WebhookInbound
from integrations.resilience import CircuitBreaker, call_provider

logger = structlog.get_logger(__name__)

SUCCESS_STATUS_CODE = "0000"
TOKEN_EXPIRY_MARGIN_SECONDS = 60

TRANSACTION_STATUS_MAP = {
    "completed": PaymentStatus.COMPLETED,
    "initiated": PaymentStatus.PENDING,
    "inprogress": PaymentStatus.PENDING,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELED,
}


def map_transaction_status(status: Optional[str]) -> PaymentStatus:
    """Map a bKash transactionStatus onto the canonical vocabulary."""
    if not status:
        return PaymentStatus.PENDING
    return TRANSACTION_STATUS_MAP.get(status.lower(), PaymentStatus.PENDING)


class BkashStrategy:
    """bKash mobile wallet strategy over its JSON HTTP API."""

    provider = PaymentProvider.BKASH

    def __init__(
        self,
        base_url: str,
        app_key: str,
        app_secret: str,
        username: str,
        password: str,
        callback_url: str,
        currency: str = "BDT",
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_wait_multiplier: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.app_key = app_key
        self.app_secret = app_secret
        self.username = username
        self.password = password
        self.callback_url = callback_url
        self.currency = currency
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max_attempts
        self.retry_wait_multiplier = retry_wait_multiplier
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.circuit_breaker = circuit_breaker or CircuitBreaker("bkash")
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def _post(
        self, path: str, payload: Dict[str, Any], headers: Dict[str, str]
    ) -> Dict[str, Any]:
        """
        POST to the bKash API and decode the JSON body.

        Raises:
            ProviderError: transient for network errors, 429 and 5xx
        """
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise ProviderError(f"bKash request failed: {e}", transient=True) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderError(
                f"bKash returned HTTP {response.status_code}", transient=True
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Malformed bKash response") from e
        if response.status_code >= 400:
            message = data.get("statusMessage") if isinstance(data, dict) else None
            raise ProviderError(
                message or f"bKash returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not isinstance(data, dict):
            raise ProviderError("Malformed bKash response")
        return data

    async def _get_token(self) -> str:
        """Return the cached grant token, requesting a new one when expired."""
        async with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            data = await self._post(
                "/checkout/token/grant",
                {"app_key": self.app_key, "app_secret": self.app_secret},
                {"username": self.username, "password": self.password},
            )
            token = data.get("id_token")
            if not token:
                raise ProviderError(
                    data.get("statusMessage") or "Failed to generate bKash token"
                )
            expires_in = int(data.get("expires_in", 3600))
            self._token = token
            self._token_expires_at = (
                self._clock() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
            )
            logger.info("bkash_token_granted", expires_in=expires_in)
            return token

    async def _authorized_post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        token = await self._get_token()
        return await self._post(
            path,
            payload,
            {"Authorization": f"Bearer {token}", "X-APP-Key": self.app_key},
        )

    async def _call(self, operation: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await call_provider(
            operation,
            lambda: self._authorized_post(path, payload),
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
        Create a bKash checkout payment.

        Only ``statusCode == "0000"`` counts as success. bKash has no
        metadata field; ``metadata`` is logged only.
        """
        payload = {
            "mode": "0011",
            "payerReference": str(order_id),
            "callbackURL": self.callback_url,
            "amount": format_money(amount),
            "currency": self.currency,
            "intent": "sale",
            "merchantInvoiceNumber": f"INV-{order_id}",
        }
        logger.info(
            "creating_bkash_payment",
            order_id=str(order_id),
            amount=payload["amount"],
            metadata=metadata or {},
        )

        try:
            data = await self._call("create_intent", "/checkout/payment/create", payload)
        except ProviderError as e:
            logger.error("bkash_payment_error", order_id=str(order_id), error=e.message)
            return ProviderResult.from_error(e)

        if data.get("statusCode") != SUCCESS_STATUS_CODE or not data.get("paymentID"):
            message = data.get("statusMessage") or "bKash payment creation failed"
            logger.error(
                "bkash_payment_rejected",
                order_id=str(order_id),
                status_code=data.get("statusCode"),
                status_message=message,
            )
            return ProviderResult.failed(message, raw_payload=data)

        logger.info("bkash_payment_created", order_id=str(order_id), payment_id=data["paymentID"])
        return ProviderResult.ok(
            transaction_id=data["paymentID"],
            status=map_transaction_status(data.get("transactionStatus")),
            raw_payload=data,
            message=data.get("statusMessage") or "Payment initiated successfully",
        )

    async def settle(self, inbound: Inbound) -> ProviderResult:
        if isinstance(inbound, PullInbound):
            return await self._verify(inbound.transaction_id)
        if isinstance(inbound, WebhookInbound):
            logger.warning("bkash_webhook_rejected", reason="unsigned notifications")
            return ProviderResult.failed(
                "bKash notifications cannot be authenticated; use payment verification",
                error_kind=ErrorKind.VALIDATION,
            )
        return ProviderResult.failed(
            f"Unsupported inbound type: {type(inbound).__name__}",
            error_kind=ErrorKind.VALIDATION,
        )

    async def _verify(self, transaction_id: str) -> ProviderResult:
        try:
            data = await self._call(
                "verify", "/checkout/payment/query", {"paymentID": transaction_id}
            )
        except ProviderError as e:
            logger.error("bkash_verification_error", transaction_id=transaction_id, error=e.message)
            return ProviderResult.from_error(e)

        if data.get("paymentID") and data["paymentID"] != transaction_id:
            return ProviderResult.failed(
                f"bKash answered for payment {data['paymentID']}, expected {transaction_id}",
                raw_payload=data,
            )

        status = map_transaction_status(data.get("transactionStatus"))
        logger.info(
            "bkash_payment_verified",
            transaction_id=transaction_id,
            transaction_status=data.get("transactionStatus"),
            status=status.value,
        )
        return ProviderResult.ok(
            transaction_id=transaction_id,
            status=status,
            raw_payload=data,
            message=data.get("statusMessage") or "Payment verified",
        )

    async def close(self) -> None:
        await self.client.aclose()
