# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - MONITORING PACKAGE
# =============================================================================
"""
Monitoring Package

Logging and metrics infrastructure for the autonomous development loop.

Components:
    - Logger: structlog rendering, cycle context, secret redaction
    - Metrics: Prometheus metrics collection
    - Health: Aggregated component health checks

Usage:
    from monitoring import setup_logging, cycle_context, MetricsCollector

    setup_logging(level="INFO", fmt="json")

    with cycle_context("planner"):
        ...

    metrics = MetricsCollector()
    metrics.record_llm_call("gemini-2.5-pro", "success", 12.4)
"""

from monitoring.logger import (
    setup_logging,
    cycle_context,
    redact_secrets,
    scrub_text,
    mask_dict,
)

from monitoring.metrics import (
    MetricsCollector,
    HealthCheck,
    create_metrics_collector,
)


__all__ = [
    "setup_logging",
    "cycle_context",
    "redact_secrets",
    "scrub_text",
    "mask_dict",
    "MetricsCollector",
    "HealthCheck",
    "create_metrics_collector",
]
