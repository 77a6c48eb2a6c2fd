"""
Tests for pull verification, stale payment sweeps and the worker loop.
"""
import asyncio
import uuid
from typing import Any, Dict, List

import pytest
from sqlalchemy.exc import OperationalError

from core.bootstrap import Services
from core.errors import NotFoundError, ProviderError, ValidationError
from core.order_service import Caller, OrderLineRequest
from database.models import OrderStatus, PaymentStatus, Product
from integrations.base import ProviderResult
from workers.reconciliation_worker import run_reconciliation_sweep, run_worker

from tests.conftest import FakeStrategy, get_product


async def create_pending_payment(
    services: Services, owner_id: uuid.UUID, lines: List[OrderLineRequest]
) -> str:
    order = await services.orders.create_order(owner_id, lines)
    payment = await services.payments.create_payment(order.id, "stripe")
    return payment.transaction_id


class TestReconcilePayment:
    """Test suite for single payment verification."""

    @pytest.mark.integration
    async def test_completed_at_provider_settles(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        products: Dict[str, Product],
        scenario_lines: List[OrderLineRequest],
    ) -> None:
        tx = await create_pending_payment(services, owner_id, scenario_lines)
        fake_strategy.verify_statuses[tx] = PaymentStatus.COMPLETED

        payment = await services.reconciliation.reconcile_payment(tx)

        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.raw_response == {"id": tx, "status": "completed"}
        order = await services.orders.get_order(payment.order_id)
        assert order.status == OrderStatus.PAID.value
        assert (await get_product(services.session_factory, products["x"].id)).stock == 7

    @pytest.mark.integration
    async def test_still_pending_at_provider_changes_nothing(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        scenario_lines: List[OrderLineRequest],
    ) -> None:
        tx = await create_pending_payment(services, owner_id, scenario_lines)

        payment = await services.reconciliation.reconcile_payment(tx)

        assert payment.status == PaymentStatus.PENDING.value
        assert fake_strategy.verified == [tx]

    @pytest.mark.integration
    async def test_completed_payment_skips_provider(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        scenario_lines: List[OrderLineRequest],
    ) -> None:
        tx = await create_pending_payment(services, owner_id, scenario_lines)
        await services.settlement.settle(tx, PaymentStatus.COMPLETED)

        payment = await services.reconciliation.reconcile_payment(tx)

        assert payment.status == PaymentStatus.COMPLETED.value
        assert fake_strategy.verified == []

    @pytest.mark.integration
    async def test_provider_failure_raises_provider_error(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        scenario_lines: List[OrderLineRequest],
        mocker: Any,
    ) -> None:
        tx = await create_pending_payment(services, owner_id, scenario_lines)
        mocker.patch.object(
            fake_strategy,
            "settle",
            return_value=ProviderResult.failed("Provider unavailable", transient=True),
        )

        with pytest.raises(ProviderError) as exc_info:
            await services.reconciliation.reconcile_payment(tx)

        assert exc_info.value.transient is True

    @pytest.mark.integration
    async def test_foreign_caller_is_rejected(
        self,
        services: Services,
        owner_id: uuid.UUID,
        scenario_lines: List[OrderLineRequest],
    ) -> None:
        tx = await create_pending_payment(services, owner_id, scenario_lines)

        with pytest.raises(ValidationError, match="your own orders"):
            await services.reconciliation.reconcile_payment(tx, Caller(user_id=uuid.uuid4()))

    @pytest.mark.integration
    async def test_unknown_transaction_is_not_found(self, services: Services) -> None:
        with pytest.raises(NotFoundError):
            await services.reconciliation.reconcile_payment("tx_missing")


class TestSweep:
    """Test suite for stale payment sweeps."""

    @pytest.mark.integration
    async def test_sweep_summarizes_outcomes(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        products: Dict[str, Product],
    ) -> None:
        line = [
            OrderLineRequest(product_id=products["x"].id, quantity=1, price=products["x"].price)
        ]
        settled_tx = await create_pending_payment(services, owner_id, line)
        pending_tx = await create_pending_payment(services, owner_id, line)
        fake_strategy.verify_statuses[settled_tx] = PaymentStatus.COMPLETED

        summary = await services.reconciliation.sweep_stale_payments(
            stale_after_seconds=0, batch_size=10
        )

        assert summary == {"checked": 2, "settled": 1, "pending": 1, "failed": 0}
        assert sorted(fake_strategy.verified) == sorted([settled_tx, pending_tx])
        assert (await get_product(services.session_factory, products["x"].id)).stock == 9

    @pytest.mark.integration
    async def test_sweep_continues_after_a_failure(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        products: Dict[str, Product],
    ) -> None:
        line = [
            OrderLineRequest(product_id=products["y"].id, quantity=3, price=products["y"].price)
        ]
        first_tx = await create_pending_payment(services, owner_id, line)
        second_tx = await create_pending_payment(services, owner_id, line)
        fake_strategy.verify_statuses[first_tx] = PaymentStatus.COMPLETED
        fake_strategy.verify_statuses[second_tx] = PaymentStatus.COMPLETED

        summary = await services.reconciliation.sweep_stale_payments(
            stale_after_seconds=0, batch_size=10
        )

        # Stock 5 covers only one of the two orders of 3
        assert summary == {"checked": 2, "settled": 1, "pending": 0, "failed": 1}
        assert (await get_product(services.session_factory, products["y"].id)).stock == 2

    @pytest.mark.integration
    async def test_sweep_continues_after_a_database_error(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        products: Dict[str, Product],
        mocker: Any,
    ) -> None:
        line = [
            OrderLineRequest(product_id=products["x"].id, quantity=1, price=products["x"].price)
        ]
        first_tx = await create_pending_payment(services, owner_id, line)
        second_tx = await create_pending_payment(services, owner_id, line)
        fake_strategy.verify_statuses[first_tx] = PaymentStatus.COMPLETED
        fake_strategy.verify_statuses[second_tx] = PaymentStatus.COMPLETED

        settlement = services.reconciliation.settlement
        original_settle = settlement.settle
        calls: List[str] = []

        async def settle_locked_once(transaction_id: str, *args: Any, **kwargs: Any) -> Any:
            calls.append(transaction_id)
            if len(calls) == 1:
                raise OperationalError("UPDATE payments", {}, Exception("lock timeout"))
            return await original_settle(transaction_id, *args, **kwargs)

        mocker.patch.object(settlement, "settle", side_effect=settle_locked_once)

        summary = await services.reconciliation.sweep_stale_payments(
            stale_after_seconds=0, batch_size=10
        )

        assert summary == {"checked": 2, "settled": 1, "pending": 0, "failed": 1}
        assert len(calls) == 2
        assert (await get_product(services.session_factory, products["x"].id)).stock == 9

    @pytest.mark.integration
    async def test_sweep_ignores_recent_payments(
        self,
        services: Services,
        owner_id: uuid.UUID,
        scenario_lines: List[OrderLineRequest],
    ) -> None:
        await create_pending_payment(services, owner_id, scenario_lines)

        summary = await services.reconciliation.sweep_stale_payments(
            stale_after_seconds=3600, batch_size=10
        )

        assert summary["checked"] == 0


class TestWorker:
    """Test suite for the worker entry points."""

    @pytest.mark.integration
    async def test_run_reconciliation_sweep_uses_settings(
        self,
        services: Services,
        fake_strategy: FakeStrategy,
        owner_id: uuid.UUID,
        scenario_lines: List[OrderLineRequest],
    ) -> None:
        tx = await create_pending_payment(services, owner_id, scenario_lines)
        fake_strategy.verify_statuses[tx] = PaymentStatus.CANCELED

        summary = await run_reconciliation_sweep(services)

        assert summary["settled"] == 1
        payment = await services.payments.get_payment_by_transaction_id(tx)
        assert payment.status == PaymentStatus.CANCELED.value

    @pytest.mark.unit
    async def test_worker_survives_database_errors(
        self, services: Services, mocker: Any
    ) -> None:
        stop_event = asyncio.Event()
        calls = []

        async def failing_sweep(**kwargs: Any) -> Dict[str, Any]:
            calls.append(kwargs)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            stop_event.set()
            return {"checked": 0, "settled": 0, "pending": 0, "failed": 0}

        mocker.patch.object(services.reconciliation, "sweep_stale_payments", failing_sweep)
        services.settings.reconciliation_interval_seconds = 0.01

        await asyncio.wait_for(run_worker(services, stop_event), timeout=5)

        assert len(calls) == 2
