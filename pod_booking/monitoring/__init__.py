"""Monitoring: structured logging, Prometheus metrics and health checks."""
from pod_booking.monitoring.health import HealthCheck, HealthCheckError
from pod_booking.monitoring.logging import get_logger, setup_logging
from pod_booking.monitoring.metrics import MetricsCollector, metrics

__all__ = [
    "HealthCheck",
    "HealthCheckError",
    "MetricsCollector",
    "get_logger",
    "metrics",
    "setup_logging",
]
