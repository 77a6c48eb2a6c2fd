"""
Explicit wiring of the service graph.

Everything is built once at startup and passed by reference; nothing
here is a module-level singleton.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config import Settings
from core.order_service import OrderService
from core.payment_service import PaymentService
from core.reconciliation import ReconciliationService
from core.settlement import SettlementEngine
from core.webhooks import WebhookIngress
from database.connection import close_db, create_engine, create_session_factory
from integrations.registry import StrategyRegistry, build_registry
from monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """The application's service container."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    registry: StrategyRegistry
    settlement: SettlementEngine
    orders: OrderService
    payments: PaymentService
    webhooks: WebhookIngress
    reconciliation: ReconciliationService
    health: HealthCheck
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        """Release provider clients and database connections."""
        await self.registry.close()
        if self.engine is not None:
            await close_db(self.engine)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    registry: StrategyRegistry,
    engine: Optional[AsyncEngine] = None,
) -> Services:
    """
    Wire services around an existing session factory and registry.

    Args:
        settings: Application settings
        session_factory: Session factory for all units of work
        registry: Configured payment strategies
        engine: Engine to dispose on ``Services.close``

    Returns:
        Services: Fully wired container
    """
    settlement = SettlementEngine(session_factory)
    services = Services(
        settings=settings,
        session_factory=session_factory,
        registry=registry,
        settlement=settlement,
        orders=OrderService(session_factory),
        payments=PaymentService(session_factory, registry, settlement),
        webhooks=WebhookIngress(registry, settlement),
        reconciliation=ReconciliationService(session_factory, registry, settlement),
        health=HealthCheck(session_factory, registry),
        engine=engine,
    )
    logger.info("services_initialized")
    return services


def create_services(settings: Settings) -> Services:
    """Build engine, session factory and provider registry from settings."""
    engine = create_engine(settings)
    return build_services(
        settings,
        create_session_factory(engine),
        build_registry(settings),
        engine=engine,
    )
