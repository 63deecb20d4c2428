"""Logging and metrics for the fetch engine."""

from .logging import configure_logging
from .metrics import METRICS, MetricsManager, status_class, update_process_metrics

__all__ = ["configure_logging", "MetricsManager", "METRICS", "status_class", "update_process_metrics"]
