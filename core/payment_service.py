"""
Payment orchestration service.

Creates payment attempts against a provider while enforcing at most one
completed payment per order:
1. Check the order is pending and not already paid
2. Call the provider outside any database transaction
3. Persist the payment row (re-checking the order under lock)
4. Hand synchronous terminal results to the settlement engine
"""
import time
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import (
    ConflictError,
    ErrorKind,
    NotFoundError,
    ProviderError,
    ServiceError,
    ValidationError,
)
from core.order_service import Caller, ensure_order_access
from core.settlement import SettlementEngine
from database import repositories
from database.models import Order, OrderStatus, Payment, PaymentStatus
from integrations.registry import StrategyRegistry
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def ensure_payable(order: Order, payments: List[Payment]) -> None:
    """
    Raise if the order cannot take a new payment attempt.

    Raises:
        ConflictError: Order is not pending or already has a completed payment
    """
    if order.status != OrderStatus.PENDING.value:
        raise ConflictError(
            f"Order cannot be paid. Current status: {order.status}",
            order_id=str(order.id),
        )
    if any(payment.status == PaymentStatus.COMPLETED.value for payment in payments):
        raise ConflictError("Order has already been paid", order_id=str(order.id))


class PaymentService:
    """Creates and reads payment attempts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: StrategyRegistry,
        settlement: SettlementEngine,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settlement = settlement

    async def create_payment(
        self,
        order_id: uuid.UUID,
        provider: str,
        metadata: Optional[Dict[str, Any]] = None,
        caller: Optional[Caller] = None,
    ) -> Payment:
        """
        Create a payment attempt for an order.

        Flow:
        1. Load order and its payments (read-only)
        2. Resolve the provider strategy
        3. Create the provider intent (no transaction open)
        4. Insert the payment row as pending
        5. Settle immediately when the provider answered with a terminal status;
           if that settlement fails the pending payment is returned and left to
           reconciliation

        Args:
            order_id: Order to pay
            provider: Provider name (e.g. 'stripe', 'bkash')
            metadata: Extra metadata forwarded to the provider
            caller: Authenticated caller; customers may only pay their own orders

        Returns:
            Payment: The persisted payment attempt

        Raises:
            NotFoundError: Order does not exist
            ConflictError: Order not pending, already paid, or duplicate
                transaction id
            ValidationError: Unsupported provider or caller not the owner
            ProviderError: Provider call failed; nothing was persisted
            SQLAlchemyError: Database failure while persisting or settling
        """
        log = logger.bind(order_id=str(order_id), provider=provider)

        async with self.session_factory() as db:
            order = await repositories.get_order(db, order_id)
            if order is None:
                raise NotFoundError(f"Order with ID {order_id} not found", order_id=str(order_id))
            ensure_order_access(order, caller)
            payments = await repositories.list_payments_for_order(db, order_id)
        ensure_payable(order, payments)

        strategy = self.registry.get(provider)
        provider_name = strategy.provider.value

        started = time.perf_counter()
        result = await strategy.create_intent(order.id, order.total_amount, metadata)
        metrics.record_provider_call(provider_name, "create_intent", time.perf_counter() - started)

        if not result.success or not result.transaction_id:
            metrics.record_payment_created(provider_name, "provider_error")
            log.error(
                "payment_intent_failed",
                error=result.message,
                transient=result.transient,
            )
            if result.error_kind is ErrorKind.VALIDATION:
                raise ValidationError(result.message or "Payment processing failed")
            raise ProviderError(
                result.message or "Payment processing failed",
                transient=result.transient,
                provider=provider_name,
            )

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    # Re-check under lock: the order may have been paid or
                    # canceled while the provider call was in flight.
                    locked = await repositories.get_order(db, order_id, for_update=True)
                    if locked is None:
                        raise NotFoundError(
                            f"Order with ID {order_id} not found", order_id=str(order_id)
                        )
                    ensure_payable(
                        locked, await repositories.list_payments_for_order(db, order_id)
                    )
                    payment = await repositories.insert_payment(
                        db,
                        order_id=order_id,
                        provider=provider_name,
                        transaction_id=result.transaction_id,
                        amount=locked.total_amount,
                        status=PaymentStatus.PENDING.value,
                        raw_response=result.raw_payload,
                    )
        except IntegrityError as e:
            metrics.record_payment_created(provider_name, "conflict")
            log.warning(
                "payment_duplicate_transaction",
                transaction_id=result.transaction_id,
                error=str(e.orig),
            )
            raise ConflictError(
                f"Payment with transaction ID {result.transaction_id} already exists",
                transaction_id=result.transaction_id,
            ) from e
        except ConflictError:
            metrics.record_payment_created(provider_name, "conflict")
            log.warning("payment_order_changed_during_intent", transaction_id=result.transaction_id)
            raise

        metrics.record_payment_created(provider_name, "created")
        log.info(
            "payment_created",
            payment_id=str(payment.id),
            transaction_id=payment.transaction_id,
            initial_status=result.status.value if result.status else None,
        )

        if result.is_terminal:
            try:
                await self.settlement.settle(
                    result.transaction_id,
                    result.status,
                    result.raw_payload,
                    message=result.message or None,
                )
            except ServiceError as e:
                # Settlement rolled back; the payment stays pending for reconciliation
                log.error(
                    "payment_immediate_settlement_failed",
                    transaction_id=result.transaction_id,
                    error=e.message,
                    error_kind=e.kind.value,
                    alert=True,
                )
                return payment
            return await self.get_payment_by_transaction_id(result.transaction_id)

        return payment

    async def get_payment_by_transaction_id(
        self, transaction_id: str, caller: Optional[Caller] = None
    ) -> Payment:
        """
        Fetch a payment by provider transaction id.

        Raises:
            NotFoundError: If no payment has this transaction id
        """
        async with self.session_factory() as db:
            payment = await repositories.get_payment_by_transaction_id(db, transaction_id)
            if payment is None:
                raise NotFoundError(
                    f"Payment with transaction ID {transaction_id} not found",
                    transaction_id=transaction_id,
                )
            if caller is not None and not caller.is_admin:
                order = await repositories.get_order(db, payment.order_id)
                if order is not None:
                    ensure_order_access(order, caller)
        return payment

    async def list_payments_for_order(
        self, order_id: uuid.UUID, caller: Optional[Caller] = None
    ) -> List[Payment]:
        """
        All payment attempts of an order, newest first.

        Raises:
            NotFoundError: If the order does not exist
        """
        async with self.session_factory() as db:
            order = await repositories.get_order(db, order_id)
            if order is None:
                raise NotFoundError(f"Order with ID {order_id} not found", order_id=str(order_id))
            ensure_order_access(order, caller)
            return await repositories.list_payments_for_order(db, order_id)
