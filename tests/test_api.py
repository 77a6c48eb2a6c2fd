"""
Integration tests for the HTTP API.
"""
import uuid
from typing import Any, Dict

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from core.bootstrap import Services
from database.models import PaymentStatus, Product
from integrations.base import ProviderResult
from monitoring.health import HealthCheckError

from tests.conftest import FakeStrategy, VALID_SIGNATURE, get_product, webhook_body

OWNER = "123e4567-e89b-12d3-a456-426614174000"
HEADERS = {"X-User-Id": OWNER}


def order_payload(products: Dict[str, Product]) -> Dict[str, Any]:
    return {
        "items": [
            {"product_id": str(products["x"].id), "quantity": 3, "price": "10.00"},
            {"product_id": str(products["y"].id), "quantity": 1, "price": "25.00"},
        ]
    }


async def create_order(client: AsyncClient, products: Dict[str, Product]) -> Dict[str, Any]:
    response = await client.post("/orders", json=order_payload(products), headers=HEADERS)
    assert response.status_code == 201
    return response.json()


async def create_payment(client: AsyncClient, order_id: str) -> Dict[str, Any]:
    response = await client.post(
        "/payments", json={"order_id": order_id, "provider": "stripe"}, headers=HEADERS
    )
    assert response.status_code == 201
    return response.json()


class TestOrderEndpoints:
    """Test suite for /orders."""

    @pytest.mark.integration
    async def test_create_order(self, client: AsyncClient, products: Dict[str, Product]) -> None:
        response = await client.post("/orders", json=order_payload(products), headers=HEADERS)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["total_amount"] == "55.00"
        assert data["owner_id"] == OWNER
        assert [item["subtotal"] for item in data["items"]] == ["30.00", "25.00"]
        assert "X-Request-ID" in response.headers

    @pytest.mark.integration
    async def test_create_order_requires_caller(
        self, client: AsyncClient, products: Dict[str, Product]
    ) -> None:
        response = await client.post("/orders", json=order_payload(products))

        assert response.status_code == 401

    @pytest.mark.integration
    async def test_insufficient_stock_is_bad_request(
        self, client: AsyncClient, products: Dict[str, Product]
    ) -> None:
        payload = {
            "items": [{"product_id": str(products["y"].id), "quantity": 6, "price": "25.00"}]
        }

        response = await client.post("/orders", json=payload, headers=HEADERS)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "validation"
        assert "Insufficient stock" in body["message"]

    @pytest.mark.integration
    async def test_empty_order_is_rejected_by_schema(self, client: AsyncClient) -> None:
        response = await client.post("/orders", json={"items": []}, headers=HEADERS)

        assert response.status_code == 422

    @pytest.mark.integration
    async def test_get_order_of_other_customer(
        self, client: AsyncClient, products: Dict[str, Product]
    ) -> None:
        order = await create_order(client, products)

        response = await client.get(
            f"/orders/{order['id']}", headers={"X-User-Id": str(uuid.uuid4())}
        )

        assert response.status_code == 400

    @pytest.mark.integration
    async def test_admin_can_list_any_owner(
        self, client: AsyncClient, products: Dict[str, Product]
    ) -> None:
        order = await create_order(client, products)
        admin = {"X-User-Id": str(uuid.uuid4()), "X-User-Role": "admin"}

        response = await client.get("/orders", params={"owner_id": OWNER}, headers=admin)

        assert response.status_code == 200
        assert [item["id"] for item in response.json()] == [order["id"]]

    @pytest.mark.integration
    async def test_customer_cannot_list_other_owner(self, client: AsyncClient) -> None:
        response = await client.get(
            "/orders", params={"owner_id": str(uuid.uuid4())}, headers=HEADERS
        )

        assert response.status_code == 403

    @pytest.mark.integration
    async def test_unknown_order_is_not_found(self, client: AsyncClient) -> None:
        response = await client.get(f"/orders/{uuid.uuid4()}", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


class TestPaymentFlow:
    """Test suite for payments and webhooks over HTTP."""

    @pytest.mark.integration
    async def test_pay_and_settle_by_webhook(
        self, client: AsyncClient, services: Services, products: Dict[str, Product]
    ) -> None:
        order = await create_order(client, products)
        payment = await create_payment(client, order["id"])
        assert payment["status"] == "pending"
        assert payment["amount"] == "55.00"

        response = await client.post(
            "/webhooks/stripe",
            content=webhook_body(payment["transaction_id"], "completed"),
            headers={"Stripe-Signature": VALID_SIGNATURE},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "settled"}
        paid = await client.get(f"/orders/{order['id']}", headers=HEADERS)
        assert paid.json()["status"] == "paid"
        assert (await get_product(services.session_factory, products["x"].id)).stock == 7

        # Paying a paid order is a conflict
        again = await client.post(
            "/payments", json={"order_id": order["id"], "provider": "stripe"}, headers=HEADERS
        )
        assert again.status_code == 409
        assert again.json() == {
            "success": False,
            "error": "conflict",
            "message": "Order cannot be paid. Current status: paid",
        }

    @pytest.mark.integration
    async def test_webhook_with_bad_signature(
        self, client: AsyncClient, products: Dict[str, Product]
    ) -> None:
        order = await create_order(client, products)
        payment = await create_payment(client, order["id"])

        response = await client.post(
            "/webhooks/stripe",
            content=webhook_body(payment["transaction_id"], "completed"),
            headers={"Stripe-Signature": "forged"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation"

    @pytest.mark.integration
    async def test_webhook_database_failure_asks_for_redelivery(
        self,
        client: AsyncClient,
        services: Services,
        products: Dict[str, Product],
        mocker: Any,
    ) -> None:
        order = await create_order(client, products)
        payment = await create_payment(client, order["id"])
        mocker.patch.object(
            services.settlement,
            "settle",
            side_effect=OperationalError("UPDATE payments", {}, Exception("database is locked")),
        )

        response = await client.post(
            "/webhooks/stripe",
            content=webhook_body(payment["transaction_id"], "completed"),
            headers={"Stripe-Signature": VALID_SIGNATURE},
        )

        assert response.status_code == 503
        assert response.json() == {"received": False, "outcome": "retry"}

    @pytest.mark.integration
    async def test_provider_failure_is_bad_gateway(
        self,
        client: AsyncClient,
        fake_strategy: FakeStrategy,
        products: Dict[str, Product],
    ) -> None:
        order = await create_order(client, products)
        fake_strategy.create_failure = ProviderResult.failed(
            "Stripe error: timeout", transient=True
        )

        response = await client.post(
            "/payments", json={"order_id": order["id"], "provider": "stripe"}, headers=HEADERS
        )

        assert response.status_code == 502
        assert response.json()["error"] == "provider"

    @pytest.mark.integration
    async def test_verify_payment(
        self,
        client: AsyncClient,
        fake_strategy: FakeStrategy,
        products: Dict[str, Product],
    ) -> None:
        order = await create_order(client, products)
        payment = await create_payment(client, order["id"])
        fake_strategy.verify_statuses[payment["transaction_id"]] = PaymentStatus.COMPLETED

        response = await client.post(
            f"/payments/verify/{payment['transaction_id']}", headers=HEADERS
        )

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        listed = await client.get(f"/payments/order/{order['id']}", headers=HEADERS)
        assert [item["status"] for item in listed.json()] == ["completed"]

    @pytest.mark.integration
    async def test_unknown_transaction_is_not_found(self, client: AsyncClient) -> None:
        response = await client.get("/payments/transaction/tx_missing", headers=HEADERS)

        assert response.status_code == 404


class TestMonitoringEndpoints:
    """Test suite for health and metrics."""

    @pytest.mark.integration
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["providers"]["configured"] == ["stripe"]

    @pytest.mark.integration
    async def test_liveness(self, client: AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    async def test_readiness_fails_without_database(
        self, client: AsyncClient, services: Services, mocker: Any
    ) -> None:
        mocker.patch.object(
            services.health, "check_database", side_effect=HealthCheckError("database down")
        )

        response = await client.get("/health/ready")

        assert response.status_code == 503

    @pytest.mark.integration
    async def test_metrics(self, client: AsyncClient, products: Dict[str, Product]) -> None:
        await create_order(client, products)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "orders_created_total" in response.text
