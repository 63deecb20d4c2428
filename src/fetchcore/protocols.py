"""
Core data structures and contracts for the FetchCore engine.

This module defines the value types passed between the fetch coordinator,
the worker pool, the transports and the response processor:

- FetchRequest / RawResponse / FetchResult for a single URL
- PoolHealth snapshots read by operators and the health monitor
- HostBatch groups built by the coordinator for each batch call
- Protocols that transports and processors must satisfy
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Protocol

# ============================================================================
# Errors
# ============================================================================


class FetchCoreError(Exception):
    """Base exception for FetchCore."""


class TransportFault(FetchCoreError):
    """A transport-level failure for one request.

    ``status`` is non-zero only when the server answered with a status line
    before the body could be read.
    """

    def __init__(self, description: str, *, status: int = 0, headers: Optional[Dict[str, str]] = None):
        super().__init__(description)
        self.description = description
        self.status = status
        self.headers = dict(headers or {})


class ParseFault(FetchCoreError):
    """A response body that could not be turned into a value."""

    def __init__(self, message: str, raw_response: str):
        super().__init__(message)
        self.message = message
        self.raw_response = raw_response

    def as_marker(self) -> Dict[str, Any]:
        """Marker value stored in ``FetchResult.data`` in place of the parsed body."""
        return {"parsing_error": self.message, "raw_response": self.raw_response}


class PoolShutdownError(FetchCoreError):
    """Work was submitted to a pool that has begun shutting down."""


class PoolExhaustedError(FetchCoreError):
    """The task queue is full and the overflow lane is at its cap."""


class WorkerFatalError(FetchCoreError):
    """A fault that must terminate the worker running the task."""


# ============================================================================
# Enums
# ============================================================================


class PoolState(Enum):
    """Lifecycle states of the worker pool."""

    CREATED = "created"
    RUNNING = "running"
    DEGRADED = "degraded"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# ============================================================================
# Request / response values
# ============================================================================


@dataclass(frozen=True)
class FetchRequest:
    """One outgoing request. Immutable once created."""

    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    method: str = "GET"
    body: Optional[bytes] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        object.__setattr__(self, "method", self.method.upper())


@dataclass
class RawResponse:
    """Undecoded response returned by a transport."""

    status: int
    headers: Dict[str, str]
    body: bytes
    url: str
    http_version: str = "HTTP/1.1"


@dataclass
class FetchResult:
    """Outcome of one fetch task (a URL plus all of its retries)."""

    url: str
    status_code: int = 0
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: float = 0.0
    attempts: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def successful(self) -> bool:
        return 200 <= self.status_code < 300 and self.error is None

    @classmethod
    def failure(cls, url: str, error: str) -> "FetchResult":
        """Build a result for a URL whose task never produced one."""
        return cls(url=url, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "status_code": self.status_code,
            "headers": dict(self.headers),
            "error_message": self.error,
            "duration_ms": round(self.duration_ms, 3),
            "attempts": self.attempts,
        }

    def __str__(self) -> str:
        return (
            f"FetchResult(url='{self.url}', status_code={self.status_code}, "
            f"timestamp={self.timestamp.isoformat()}, successful={self.successful})"
        )


@dataclass
class HostBatch:
    """URLs sharing one network host, in first-seen order without duplicates."""

    host: str
    urls: List[str] = field(default_factory=list)

    def add(self, url: str) -> None:
        if url not in self.urls:
            self.urls.append(url)

    def __len__(self) -> int:
        return len(self.urls)


# ============================================================================
# Pool health
# ============================================================================


@dataclass(frozen=True)
class PoolHealth:
    """Point-in-time snapshot of the worker pool."""

    active_workers: int
    pool_size: int
    core_size: int
    completed_tasks: int
    queue_size: int
    workers_created: int
    workers_replaced: int
    last_health_check: datetime
    state: PoolState = PoolState.RUNNING

    @property
    def healthy(self) -> bool:
        return self.pool_size >= self.core_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activeThreads": self.active_workers,
            "poolSize": self.pool_size,
            "corePoolSize": self.core_size,
            "completedTasks": self.completed_tasks,
            "queueSize": self.queue_size,
            "threadsCreated": self.workers_created,
            "threadsReplaced": self.workers_replaced,
            "lastHealthCheck": self.last_health_check.isoformat(),
            "isHealthy": self.healthy,
            "state": self.state.value,
        }


# ============================================================================
# Protocols
# ============================================================================


class TransportProtocol(Protocol):
    """Protocol for HTTP transports used by the engine."""

    async def send(self, request: FetchRequest, *, timeout: float, multiplexed: bool = False) -> RawResponse:
        """Send one request; raise TransportFault on failure."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...

    def get_stats(self) -> Dict[str, Any]:
        """Return transport counters."""
        ...


class ProcessorProtocol(Protocol):
    """Protocol for response body processors."""

    async def parse(self, body: bytes) -> Any:
        """Turn a response body into a value or a parse-fault marker."""
        ...

    async def shutdown(self) -> None:
        """Stop the processing pool."""
        ...

    def get_stats(self) -> Dict[str, Any]:
        """Return processing counters."""
        ...
