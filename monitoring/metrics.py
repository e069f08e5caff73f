# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - METRICS COLLECTION
# =============================================================================
"""
Metrics Collection Module

Collects and exports Prometheus metrics for the orchestration loop.

Metric Categories:
    - Cycle metrics: outcomes and durations per component
      (heartbeat, planner, enforcer, strategist, troubleshooter)
    - LLM metrics: CLI invocations per model, quota fallbacks
    - External metrics: errors per external service

Each collector owns a private registry so several collectors (for example
one per test) never clash on metric names.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Tuple

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

logger = logging.getLogger(__name__)


# =============================================================================
# METRICS COLLECTOR
# =============================================================================


class MetricsCollector:
    """
    Central metrics collector for the loop.

    Usage::

        metrics = MetricsCollector()
        with metrics.track_cycle("planner") as cycle:
            ...
            cycle["outcome"] = "created"
        metrics.record_llm_call("gemini-2.5-pro", "success", 12.4)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self._start_time = time.monotonic()
        self.registry = CollectorRegistry()

        namespace = self.config.get("namespace", "adl")

        # Cycle metrics
        self.cycles_total = Counter(
            "cycles_total",
            "Total orchestration cycles by component and outcome",
            ["component", "outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        self.cycle_duration = Histogram(
            "cycle_duration_seconds",
            "Duration of orchestration cycles",
            ["component"],
            namespace=namespace,
            registry=self.registry,
            buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200],
        )

        # LLM metrics
        self.llm_calls = Counter(
            "llm_calls_total",
            "LLM CLI invocations by model and outcome",
            ["model", "outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        self.llm_latency = Histogram(
            "llm_call_duration_seconds",
            "LLM CLI invocation duration",
            ["model"],
            namespace=namespace,
            registry=self.registry,
            buckets=[1, 5, 10, 30, 60, 120, 300, 600],
        )
        self.llm_fallbacks = Counter(
            "llm_fallbacks_total",
            "LLM calls retried against the fallback model",
            namespace=namespace,
            registry=self.registry,
        )

        # External service metrics
        self.external_errors = Counter(
            "external_errors_total",
            "Errors returned by external services",
            ["service"],
            namespace=namespace,
            registry=self.registry,
        )

        self.system_info = Info(
            "system",
            "System information",
            namespace=namespace,
            registry=self.registry,
        )

    # -- Cycle metrics -----------------------------------------------------

    def record_cycle(self, component: str, outcome: str, duration: float) -> None:
        """Record a finished cycle."""
        self.cycles_total.labels(component=component, outcome=outcome).inc()
        self.cycle_duration.labels(component=component).observe(duration)

    @contextmanager
    def track_cycle(self, component: str) -> Iterator[Dict[str, str]]:
        """
        Time a cycle and record its outcome.

        The yielded dict's ``outcome`` may be set by the caller; it defaults
        to ``success`` and becomes ``error`` when the block raises.
        """
        cycle = {"outcome": "success"}
        start = time.monotonic()
        try:
            yield cycle
        except Exception:
            cycle["outcome"] = "error"
            raise
        finally:
            self.record_cycle(component, cycle["outcome"], time.monotonic() - start)

    # -- LLM metrics -------------------------------------------------------

    def record_llm_call(self, model: str, outcome: str, duration: float) -> None:
        """Record one CLI invocation."""
        self.llm_calls.labels(model=model, outcome=outcome).inc()
        self.llm_latency.labels(model=model).observe(duration)

    def record_llm_fallback(self) -> None:
        self.llm_fallbacks.inc()

    # -- External metrics --------------------------------------------------

    def record_external_error(self, service: str) -> None:
        self.external_errors.labels(service=service).inc()

    def set_system_info(self, **info: str) -> None:
        """Set system information labels."""
        self.system_info.info(info)

    def get_uptime(self) -> float:
        """Return seconds since this collector was created."""
        return time.monotonic() - self._start_time

    # =====================================================================
    # EXPORT / SNAPSHOT
    # =====================================================================

    def render(self) -> Tuple[bytes, str]:
        """Return the Prometheus exposition text and its content type."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST

    def get_sample(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of one sample, 0.0 when it has not been recorded."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    def snapshot(self) -> Dict[str, Any]:
        """Plain dict summary for logs and health responses."""
        return {
            "uptime_seconds": round(self.get_uptime(), 1),
            "llm_fallbacks": self.get_sample("adl_llm_fallbacks_total"),
        }


# =============================================================================
# HEALTH CHECKS
# =============================================================================


class HealthCheck:
    """
    System health checker that aggregates component statuses.

    Usage::

        health = HealthCheck()
        health.register("state", state_manager.health_check)
        result = await health.check_all()
    """

    def __init__(self):
        self._checks: Dict[str, Any] = {}
        self._critical: Dict[str, bool] = {}

    def register(self, name: str, check_fn, critical: bool = True) -> None:
        """
        Register a health check.

        Args:
            name: Component name.
            check_fn: Async callable returning a dict with at least
                ``{"healthy": bool}``.
            critical: Whether failure of this check means the system
                is unhealthy overall.
        """
        self._checks[name] = check_fn
        self._critical[name] = critical

    async def check_all(self) -> Dict[str, Any]:
        """Run all registered health checks."""
        results: Dict[str, Any] = {}
        overall_healthy = True

        for name, check_fn in self._checks.items():
            try:
                result = await check_fn()
                results[name] = result
                if not result.get("healthy", False) and self._critical.get(name, True):
                    overall_healthy = False
            except Exception as e:
                results[name] = {"healthy": False, "error": str(e)}
                if self._critical.get(name, True):
                    overall_healthy = False

        return {
            "healthy": overall_healthy,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": results,
        }


# =============================================================================
# FACTORY
# =============================================================================


def create_metrics_collector(
    config: Optional[Dict[str, Any]] = None,
) -> MetricsCollector:
    """Create a MetricsCollector from the ``metrics`` configuration section."""
    config = config or {}
    collector = MetricsCollector(config)
    collector.set_system_info(service="adl", mode=str(config.get("mode", "webhook")))
    return collector


__all__ = [
    "MetricsCollector",
    "HealthCheck",
    "create_metrics_collector",
]
