"""
Defines and manages Prometheus metrics for the fetch engine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

import psutil
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from fetchcore.config.config import MonitoringConfig

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Several engines may live in one process (and tests build many), so a second
# registration of the same name returns the collector already registered.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race; use the collector that won.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "requests_total": Counter(
            "fetchcore_requests_total",
            "Logical fetches issued by the engine",
            ["method"],
        ),
        "retries_total": Counter(
            "fetchcore_retries_total",
            "Retry attempts scheduled after a transient failure",
        ),
        "responses_total": Counter(
            "fetchcore_responses_total",
            "Final fetch outcomes by status class",
            ["status_class"],
        ),
        "fetch_latency_seconds": Histogram(
            "fetchcore_fetch_latency_seconds",
            "Wall time of a whole fetch task including retries",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
        ),
        "in_flight_requests": Gauge(
            "fetchcore_in_flight_requests",
            "Requests currently waiting on a transport",
        ),
        "pool_size": Gauge(
            "fetchcore_pool_size",
            "Live workers in the fetch worker pool",
        ),
        "pool_queue_depth": Gauge(
            "fetchcore_pool_queue_depth",
            "Tasks waiting in the worker pool queue",
        ),
        "pool_workers_replaced_total": Counter(
            "fetchcore_pool_workers_replaced_total",
            "Workers lost to fatal faults plus overflow executions",
        ),
        "processor_tasks_total": Counter(
            "fetchcore_processor_tasks_total",
            "Response bodies parsed, by where the parse ran",
            ["mode"],
        ),
        "process_memory_bytes": Gauge(
            "fetchcore_process_memory_bytes",
            "Resident memory of the engine process",
        ),
        "process_cpu_percent": Gauge(
            "fetchcore_process_cpu_percent",
            "CPU utilisation of the engine process",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def status_class(status: int) -> str:
    """Label value for a final status, e.g. ``2xx``; ``error`` when no status was received."""
    if status <= 0:
        return "error"
    return f"{status // 100}xx"


def update_process_metrics() -> Dict[str, float]:
    """Sample memory and CPU of the current process into the gauges."""
    process = psutil.Process()
    with process.oneshot():
        rss = float(process.memory_info().rss)
        cpu = float(process.cpu_percent(interval=None))
    METRICS["process_memory_bytes"].set(rss)
    METRICS["process_cpu_percent"].set(cpu)
    return {"memory_rss_bytes": rss, "cpu_percent": cpu}


class MetricsManager:
    """Manages the lifecycle of the metrics exporter."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._server_started = False

    def start(self) -> None:
        """Starts the Prometheus server when a port is configured."""
        if self.config.prometheus_port and not self._server_started:
            log.info("Starting Prometheus metrics server on port %s", self.config.prometheus_port)
            start_http_server(self.config.prometheus_port)
            self._server_started = True

    @property
    def serving(self) -> bool:
        return self._server_started
