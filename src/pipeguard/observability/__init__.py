"""Structured logging and Prometheus metrics for pipeguard."""

from __future__ import annotations

from .logging import bound_execution, configure_logging
from .metrics import METRICS, MetricsManager, set_circuit_state, start_metrics_server

__all__ = [
    "configure_logging",
    "bound_execution",
    "MetricsManager",
    "METRICS",
    "set_circuit_state",
    "start_metrics_server",
    "export_prometheus",
]


def export_prometheus() -> str:
    """Export metrics in Prometheus text format."""
    from prometheus_client import generate_latest

    return generate_latest().decode("utf-8")
