"""
Reconciliation poller.

Pull-verifies payments with their provider and feeds terminal results
into the same settlement engine the webhooks use. Covers lost or never
delivered notifications (bKash has no signed webhooks at all).
"""
import time
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import (
    ErrorKind,
    NotFoundError,
    ProviderError,
    ServiceError,
    ValidationError,
)
from core.order_service import Caller, ensure_order_access
from core.settlement import SettlementEngine
from database import repositories
from database.models import Payment, PaymentStatus, utcnow
from integrations.base import PullInbound
from integrations.registry import StrategyRegistry
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationService:
    """Verifies pending payments against their provider."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: StrategyRegistry,
        settlement: SettlementEngine,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.settlement = settlement

    async def _load_payment(self, transaction_id: str, caller: Optional[Caller]) -> Payment:
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

    async def reconcile_payment(
        self, transaction_id: str, caller: Optional[Caller] = None
    ) -> Payment:
        """
        Verify one payment with its provider and settle a terminal result.

        An already completed payment is returned without calling the
        provider.

        Args:
            transaction_id: Provider transaction id
            caller: Authenticated caller, if any

        Returns:
            Payment: The payment as stored after verification

        Raises:
            NotFoundError: Unknown transaction id
            ProviderError: Provider could not be reached or refused
            ConflictError: Settlement aborted (see ``SettlementEngine``)
        """
        payment = await self._load_payment(transaction_id, caller)
        if payment.status == PaymentStatus.COMPLETED.value:
            logger.info("reconcile_already_completed", transaction_id=transaction_id)
            return payment

        strategy = self.registry.get(payment.provider)
        started = time.perf_counter()
        result = await strategy.settle(PullInbound(transaction_id=transaction_id))
        metrics.record_provider_call(
            strategy.provider.value, "verify", time.perf_counter() - started
        )

        if not result.success:
            logger.error(
                "reconcile_verification_failed",
                transaction_id=transaction_id,
                provider=payment.provider,
                error=result.message,
            )
            if result.error_kind is ErrorKind.VALIDATION:
                raise ValidationError(result.message, transaction_id=transaction_id)
            raise ProviderError(
                result.message or "Payment verification failed",
                transient=result.transient,
                transaction_id=transaction_id,
            )

        if result.is_terminal:
            await self.settlement.settle(
                transaction_id,
                result.status,
                result.raw_payload,
                message=result.message or None,
            )
        else:
            logger.info(
                "reconcile_still_pending",
                transaction_id=transaction_id,
                provider=payment.provider,
            )

        return await self._load_payment(transaction_id, None)

    async def sweep_stale_payments(
        self, stale_after_seconds: int, batch_size: int
    ) -> Dict[str, Any]:
        """
        Reconcile pending payments older than ``stale_after_seconds``.

        One payment failing does not stop the sweep.

        Returns:
            Dict[str, Any]: Counts per outcome
        """
        cutoff = utcnow() - timedelta(seconds=stale_after_seconds)
        async with self.session_factory() as db:
            stale = await repositories.list_stale_pending_payments(db, cutoff, batch_size)

        summary = {"checked": len(stale), "settled": 0, "pending": 0, "failed": 0}
        for payment in stale:
            try:
                refreshed = await self.reconcile_payment(payment.transaction_id)
            except ServiceError as e:
                summary["failed"] += 1
                metrics.record_reconciliation("failed")
                logger.error(
                    "reconcile_payment_failed",
                    transaction_id=payment.transaction_id,
                    error=e.message,
                    error_kind=e.kind.value,
                    alert=e.kind is not ErrorKind.PROVIDER,
                )
                continue
            except SQLAlchemyError as e:
                # Settlement rolled back; the payment stays pending for the next sweep
                summary["failed"] += 1
                metrics.record_reconciliation("failed")
                logger.error(
                    "reconcile_payment_unavailable",
                    transaction_id=payment.transaction_id,
                    error=str(e),
                    alert=True,
                )
                continue

            if refreshed.status == PaymentStatus.PENDING.value:
                summary["pending"] += 1
                metrics.record_reconciliation("pending")
            else:
                summary["settled"] += 1
                metrics.record_reconciliation("settled")

        metrics.mark_reconciliation_run()
        logger.info("reconciliation_sweep_completed", **summary)
        return summary
