"""
Health checks for the HTTP probes.

- liveness: the process answers
- readiness: the database answers; providers do not gate traffic
- full check: database plus the circuit state of every registered provider
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from integrations.registry import StrategyRegistry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency check fails."""

    pass


class HealthCheck:
    """Dependency checks for the settlement service."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: StrategyRegistry,
    ):
        self.session_factory = session_factory
        self.registry = registry

    async def check_database(self) -> Dict[str, Any]:
        """
        Run ``SELECT 1`` through a fresh session.

        Raises:
            HealthCheckError: If the database cannot be reached
        """
        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {"status": "healthy", "service": "database"}

    def check_providers(self) -> Dict[str, Any]:
        """
        Report registered providers and their circuit breaker state.

        Degraded when nothing is registered or any circuit is open.
        """
        circuits: Dict[str, str] = {}
        for provider in self.registry.providers:
            breaker = getattr(self.registry.get(provider), "circuit_breaker", None)
            circuits[provider.value] = breaker.state if breaker is not None else "n/a"

        degraded = not circuits or "open" in circuits.values()
        if degraded:
            logger.warning("provider_health_degraded", circuits=circuits)
        return {
            "status": "degraded" if degraded else "healthy",
            "service": "providers",
            "configured": list(circuits),
            "circuits": circuits,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Unhealthy without a database; degraded with provider trouble only."""
        checks: Dict[str, Any] = {"providers": self.check_providers()}
        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            return {"status": "unhealthy", "checks": checks}

        return {"status": checks["providers"]["status"], "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "not_ready", "checks": {"database": {"error": str(e)}}}
        return {"status": "ready", "checks": {"database": database}}
