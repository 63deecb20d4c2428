"""Worker pool and its health monitor."""

from .health_monitor import HealthMonitor
from .worker_pool import FATAL_FAULTS, WorkerPool

__all__ = ["FATAL_FAULTS", "HealthMonitor", "WorkerPool"]
