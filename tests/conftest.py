"""
Pytest configuration and fixtures.

Tests run against a temporary SQLite file so that separate sessions
contend for real database locks.
"""
import json
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.main import create_app
from config import Settings
from core.bootstrap import Services, build_services
from core.errors import ErrorKind
from core.order_service import OrderLineRequest
from database.connection import close_db, create_engine, create_session_factory, init_db
from database.models import PaymentProvider, PaymentStatus, Product, ProductStatus
from integrations.base import Inbound, ProviderResult, PullInbound, WebhookInbound
from integrations.registry import StrategyRegistry

VALID_SIGNATURE = "valid-signature"


class FakeStrategy:
    """
    In-process provider implementing the strategy capability set.

    Transaction ids are ``tx_1``, ``tx_2``, ... in creation order. Webhook
    bodies are JSON ``{"transaction_id": ..., "status": ...}`` and are
    accepted only with ``VALID_SIGNATURE``.
    """

    def __init__(
        self,
        provider: PaymentProvider = PaymentProvider.STRIPE,
        initial_status: PaymentStatus = PaymentStatus.PENDING,
    ):
        self.provider = provider
        self.initial_status = initial_status
        self.create_failure: Optional[ProviderResult] = None
        self.verify_statuses: Dict[str, PaymentStatus] = {}
        self.created: List[Tuple[uuid.UUID, Decimal, Optional[Dict[str, Any]]]] = []
        self.verified: List[str] = []
        self._counter = 0

    async def create_intent(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderResult:
        if self.create_failure is not None:
            return self.create_failure
        self._counter += 1
        transaction_id = f"tx_{self._counter}"
        self.created.append((order_id, amount, metadata))
        return ProviderResult.ok(
            transaction_id=transaction_id,
            status=self.initial_status,
            raw_payload={"id": transaction_id, "amount": str(amount)},
        )

    async def settle(self, inbound: Inbound) -> ProviderResult:
        if isinstance(inbound, PullInbound):
            self.verified.append(inbound.transaction_id)
            status = self.verify_statuses.get(inbound.transaction_id, PaymentStatus.PENDING)
            return ProviderResult.ok(
                transaction_id=inbound.transaction_id,
                status=status,
                raw_payload={"id": inbound.transaction_id, "status": status.value},
            )
        assert isinstance(inbound, WebhookInbound)
        if inbound.signature != VALID_SIGNATURE:
            return ProviderResult.failed("Invalid signature", error_kind=ErrorKind.VALIDATION)
        payload = json.loads(inbound.raw_body)
        return ProviderResult.ok(
            transaction_id=payload["transaction_id"],
            status=PaymentStatus(payload["status"]),
            raw_payload=payload,
            event_type=payload.get("type", "fake.event"),
        )

    async def close(self) -> None:
        return None


def webhook_body(transaction_id: str, status: str) -> bytes:
    return json.dumps({"transaction_id": transaction_id, "status": status}).encode()


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        app_name="order-settlement-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        reconciliation_stale_after_seconds=0,
        reconciliation_batch_size=10,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create the test engine with all tables."""
    engine = create_engine(test_settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def fake_strategy() -> FakeStrategy:
    return FakeStrategy()


@pytest.fixture
def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_strategy: FakeStrategy,
) -> Services:
    """Service graph wired with the fake provider registered as 'stripe'."""
    return build_services(
        test_settings, session_factory, StrategyRegistry([fake_strategy])
    )


async def add_product(
    session_factory: async_sessionmaker[AsyncSession],
    name: str,
    price: str,
    stock: int,
    status: ProductStatus = ProductStatus.ACTIVE,
) -> Product:
    async with session_factory() as db:
        async with db.begin():
            product = Product(
                sku=name.upper().replace(" ", "-"),
                name=name,
                price=Decimal(price),
                stock=stock,
                status=status.value,
            )
            db.add(product)
    return product


async def get_product(
    session_factory: async_sessionmaker[AsyncSession], product_id: uuid.UUID
) -> Product:
    async with session_factory() as db:
        return await db.get(Product, product_id)


async def set_stock(
    session_factory: async_sessionmaker[AsyncSession], product_id: uuid.UUID, stock: int
) -> None:
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(Product).where(Product.id == product_id).values(stock=stock)
            )


@pytest_asyncio.fixture
async def products(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, Product]:
    """Product X (10.00, stock 10), Y (25.00, stock 5) and an inactive Z."""
    return {
        "x": await add_product(session_factory, "Product X", "10.00", 10),
        "y": await add_product(session_factory, "Product Y", "25.00", 5),
        "z": await add_product(
            session_factory, "Product Z", "5.00", 100, status=ProductStatus.INACTIVE
        ),
    }


@pytest.fixture
def owner_id() -> uuid.UUID:
    return uuid.UUID("123e4567-e89b-12d3-a456-426614174000")


@pytest.fixture
def scenario_lines(products: Dict[str, Product]) -> List[OrderLineRequest]:
    """productX qty 3 @ 10.00 and productY qty 1 @ 25.00."""
    return [
        OrderLineRequest(product_id=products["x"].id, quantity=3, price=Decimal("10.00")),
        OrderLineRequest(product_id=products["y"].id, quantity=1, price=Decimal("25.00")),
    ]


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, services: Services
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
