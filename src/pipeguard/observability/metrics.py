"""
Defines and manages Prometheus metrics for pipeguard.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

from pipeguard.protocols import CircuitState

if TYPE_CHECKING:
    from pipeguard.config.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Re-importing this module (as the test suite does) must not fail on
# duplicate registration, so existing collectors are reused.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]

CIRCUIT_STATE_VALUES: Dict[CircuitState, int] = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


def _create_metrics() -> Dict[str, Any]:
    return {
        "requests_total": Counter(
            "pipeguard_requests_total",
            "Invocations of external services by terminal outcome",
            ["service", "outcome"],
        ),
        "request_latency_seconds": Histogram(
            "pipeguard_request_latency_seconds",
            "Latency of individual attempts against external services",
            ["service"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
        ),
        "retry_attempts_total": Counter(
            "pipeguard_retry_attempts_total",
            "Retries issued after a failed attempt",
            ["service"],
        ),
        "rate_limit_hits_total": Counter(
            "pipeguard_rate_limit_hits_total",
            "Invocations denied by a rate limiter",
            ["service"],
        ),
        "circuit_breaker_trips_total": Counter(
            "pipeguard_circuit_breaker_trips_total",
            "Transitions of a circuit breaker into the open state",
            ["service"],
        ),
        "circuit_breaker_state": Gauge(
            "pipeguard_circuit_breaker_state",
            "Current breaker state (0 closed, 1 half-open, 2 open)",
            ["service"],
        ),
        "items_total": Counter(
            "pipeguard_items_total",
            "Content items finished by the pipeline",
            ["outcome"],
        ),
        "items_in_flight": Gauge(
            "pipeguard_items_in_flight",
            "Content items currently being processed",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def set_circuit_state(service: str, state: CircuitState) -> None:
    METRICS["circuit_breaker_state"].labels(service=service).set(CIRCUIT_STATE_VALUES[state])


def start_metrics_server(port: int) -> Any:
    """Expose the default registry over HTTP. Returns the server so it can be shut down."""
    logger.info("Starting Prometheus metrics server", port=port)
    server, _thread = start_http_server(port)
    return server


class MetricsManager:
    """Manages the lifecycle of the metrics exporter."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._server: Any = None

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    def start(self) -> None:
        if self.config.prometheus_port and self._server is None:
            self._server = start_metrics_server(self.config.prometheus_port)

    def stop(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server = None
            logger.info("Prometheus metrics server stopped")
