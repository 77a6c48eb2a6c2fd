"""Logging, Prometheus metrics and health checks."""
from .health import HealthCheck, HealthCheckError
from .logging import setup_logging
from .metrics import MetricsCollector, metrics

__all__ = ["HealthCheck", "HealthCheckError", "MetricsCollector", "metrics", "setup_logging"]
