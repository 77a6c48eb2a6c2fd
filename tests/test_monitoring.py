"""
Tests for log redaction and health checks.
"""
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from integrations.registry import StrategyRegistry
from integrations.resilience import CircuitBreaker
from monitoring.health import HealthCheck, HealthCheckError
from monitoring.logging import REDACTED, redact_credentials

from tests.conftest import FakeStrategy


class TestRedaction:
    """Test suite for credential masking in log events."""

    @pytest.mark.unit
    def test_top_level_credentials_are_masked(self) -> None:
        event = {"event": "bkash_token_granted", "id_token": "eyJ...", "expires_in": 3600}

        result = redact_credentials(None, "info", event)

        assert result["id_token"] == REDACTED
        assert result["expires_in"] == 3600

    @pytest.mark.unit
    def test_nested_headers_are_masked(self) -> None:
        event = {
            "event": "bkash_request",
            "headers": {"Authorization": "Bearer abc", "X-APP-Key": "app-key"},
        }

        result = redact_credentials(None, "info", event)

        assert result["headers"] == {"Authorization": REDACTED, "X-APP-Key": "app-key"}


class TestHealthCheck:
    """Test suite for dependency checks."""

    @pytest.mark.integration
    async def test_healthy_with_closed_circuits(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        strategy = FakeStrategy()
        strategy.circuit_breaker = CircuitBreaker("stripe")
        health = HealthCheck(session_factory, StrategyRegistry([strategy]))

        result = await health.check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["providers"]["circuits"] == {"stripe": "closed"}

    @pytest.mark.integration
    async def test_open_circuit_degrades(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        strategy = FakeStrategy()
        strategy.circuit_breaker = CircuitBreaker("stripe", failure_threshold=1)
        strategy.circuit_breaker.on_failure()
        health = HealthCheck(session_factory, StrategyRegistry([strategy]))

        result = await health.check_all()

        assert result["status"] == "degraded"
        assert (await health.readiness())["status"] == "ready"

    @pytest.mark.integration
    async def test_no_providers_degrades(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        health = HealthCheck(session_factory, StrategyRegistry())

        result = await health.check_all()

        assert result["status"] == "degraded"
        assert result["checks"]["providers"]["configured"] == []

    @pytest.mark.integration
    async def test_database_failure_is_unhealthy(
        self, session_factory: async_sessionmaker[AsyncSession], mocker: Any
    ) -> None:
        health = HealthCheck(session_factory, StrategyRegistry([FakeStrategy()]))
        mocker.patch.object(
            health, "check_database", side_effect=HealthCheckError("database down")
        )

        assert (await health.check_all())["status"] == "unhealthy"
        assert (await health.readiness())["status"] == "not_ready"
