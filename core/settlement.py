"""
Settlement engine.

The single place where a payment's terminal outcome is applied to its
order and to product stock. Webhooks, pull verification and synchronous
provider results all end up here.

Flow (one transaction):
1. Compare-and-swap the payment into the terminal status; a payment that
   is already ``completed`` does not match and the event is a duplicate
2. Load the order with its items
3. completed: lock products, check and decrement stock, mark order paid
   failed: order stays pending so the customer can retry
   canceled: order is canceled
4. Any error rolls the whole unit of work back
"""
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import (
    ConflictError,
    NotFoundError,
    ServiceError,
    StockInconsistencyError,
    ValidationError,
)
from database import repositories
from database.models import Order, OrderStatus, PaymentStatus
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SettlementOutcome:
    """Result of one settlement call."""

    transaction_id: str
    status: PaymentStatus
    order_id: uuid.UUID
    applied: bool

    @property
    def duplicate(self) -> bool:
        return not self.applied


class SettlementEngine:
    """Applies terminal payment outcomes exactly once."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def settle(
        self,
        transaction_id: str,
        status: PaymentStatus,
        raw_payload: Optional[Dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> SettlementOutcome:
        """
        Apply a terminal status for a provider transaction.

        Args:
            transaction_id: Provider transaction id (idempotency key)
            status: completed, failed or canceled
            raw_payload: Provider payload stored verbatim on the payment
            message: Failure reason, stored as the payment error message

        Returns:
            SettlementOutcome: ``applied`` is False for duplicates

        Raises:
            ValidationError: ``status`` is not terminal
            NotFoundError: No payment has this transaction id
            ConflictError: Completed event for an order that is not pending
            StockInconsistencyError: A product lacks stock at completion
        """
        status = PaymentStatus(status)
        if not status.is_terminal:
            raise ValidationError(
                f"Cannot settle payment with non-terminal status: {status.value}",
                transaction_id=transaction_id,
            )

        log = logger.bind(transaction_id=transaction_id, status=status.value)
        started = time.perf_counter()
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    outcome = await self._settle(db, transaction_id, status, raw_payload, message)
        except ServiceError as e:
            metrics.record_settlement(status.value, "aborted", time.perf_counter() - started)
            log.warning("settlement_aborted", error=e.message, error_kind=e.kind.value)
            raise

        metrics.record_settlement(
            status.value,
            "applied" if outcome.applied else "duplicate",
            time.perf_counter() - started,
        )
        if outcome.applied:
            log.info("settlement_applied", order_id=str(outcome.order_id))
        else:
            log.info("settlement_duplicate", order_id=str(outcome.order_id))
        return outcome

    async def _settle(
        self,
        db: AsyncSession,
        transaction_id: str,
        status: PaymentStatus,
        raw_payload: Optional[Dict[str, Any]],
        message: Optional[str],
    ) -> SettlementOutcome:
        # The claim must be the first statement: it takes the payment row's
        # write lock before anything is read.
        claimed = await repositories.claim_payment_for_settlement(
            db,
            transaction_id,
            status,
            raw_payload,
            error_message=message if status is not PaymentStatus.COMPLETED else None,
        )
        payment = await repositories.get_payment_by_transaction_id(db, transaction_id)
        if payment is None:
            logger.error(
                "settlement_unknown_transaction",
                transaction_id=transaction_id,
                alert=True,
            )
            raise NotFoundError(
                f"Payment with transaction ID {transaction_id} not found",
                transaction_id=transaction_id,
            )

        if not claimed:
            # Only an already completed payment fails the claim
            return SettlementOutcome(
                transaction_id=transaction_id,
                status=PaymentStatus(payment.status),
                order_id=payment.order_id,
                applied=False,
            )

        order = await repositories.get_order(db, payment.order_id, for_update=True)
        if order is None:
            raise NotFoundError(
                f"Order with ID {payment.order_id} not found",
                order_id=str(payment.order_id),
            )

        if status is PaymentStatus.COMPLETED:
            await self._complete(db, order, transaction_id)
        elif status is PaymentStatus.CANCELED:
            self._cancel(order, transaction_id)
        # failed: the order stays pending and payable

        return SettlementOutcome(
            transaction_id=transaction_id,
            status=status,
            order_id=order.id,
            applied=True,
        )

    async def _complete(self, db: AsyncSession, order: Order, transaction_id: str) -> None:
        if order.status != OrderStatus.PENDING.value:
            logger.critical(
                "settlement_order_not_pending",
                transaction_id=transaction_id,
                order_id=str(order.id),
                order_status=order.status,
                alert=True,
            )
            raise ConflictError(
                f"Order {order.id} cannot be marked as paid. Current status: {order.status}",
                order_id=str(order.id),
                transaction_id=transaction_id,
            )

        required: Dict[uuid.UUID, int] = OrderedDict()
        for item in order.items:
            required[item.product_id] = required.get(item.product_id, 0) + item.quantity

        products = await repositories.lock_products(db, required)
        for product_id in sorted(required):
            quantity = required[product_id]
            product = products.get(product_id)
            available = product.stock if product is not None else None
            if (
                available is None
                or available < quantity
                or not await repositories.decrement_stock(db, product_id, quantity)
            ):
                logger.critical(
                    "settlement_stock_inconsistency",
                    transaction_id=transaction_id,
                    order_id=str(order.id),
                    product_id=str(product_id),
                    available=available,
                    required=quantity,
                    alert=True,
                )
                raise StockInconsistencyError(product_id, available, quantity, transaction_id)

        order.status = OrderStatus.PAID.value

    @staticmethod
    def _cancel(order: Order, transaction_id: str) -> None:
        if order.status != OrderStatus.PENDING.value:
            logger.warning(
                "settlement_cancel_ignored_for_order",
                transaction_id=transaction_id,
                order_id=str(order.id),
                order_status=order.status,
            )
            return
        order.status = OrderStatus.CANCELED.value
