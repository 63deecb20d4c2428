"""
Configuration management for FetchCore using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import FrozenSet, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

DEFAULT_RETRYABLE_STATUS_CODES: FrozenSet[int] = frozenset({408, 429, 500, 502, 503, 504, 507, 508, 510, 511})

DEFAULT_RETRYABLE_ERROR_MARKERS: Tuple[str, ...] = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "no route to host",
    "host unreachable",
    "network unreachable",
)

# --- Nested Configuration Models ---


class RetryPolicy(BaseModel):
    """When to retry a failed attempt and how long to wait first."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, description="Attempts allowed beyond the first.")
    base_delay: float = Field(default=1.0, ge=0, description="Wait before the first retry, in seconds.")
    backoff_multiplier: float = Field(default=2.0, gt=0, description="Growth factor applied per retry.")
    retryable_status_codes: FrozenSet[int] = Field(
        default=DEFAULT_RETRYABLE_STATUS_CODES,
        description="HTTP statuses that are worth another attempt.",
    )
    retryable_error_markers: Tuple[str, ...] = Field(
        default=DEFAULT_RETRYABLE_ERROR_MARKERS,
        description="Case-insensitive substrings of transport errors worth another attempt.",
    )

    @field_validator("retryable_error_markers", mode="after")
    @classmethod
    def lowercase_markers(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        return tuple(marker.lower() for marker in v if marker)


class PoolConfig(BaseModel):
    """Sizing and toggles for the fetch worker pool."""

    model_config = ConfigDict(frozen=True)

    worker_count: int = Field(default=10, ge=1, description="Target number of long-lived workers.")
    queue_capacity: int = Field(default=1000, ge=1, description="Bound of the pending task queue.")
    overflow_limit: int = Field(default=4, ge=0, description="Max detached tasks run when the queue is full.")
    rate_limit_interval: float = Field(default=1.0, ge=0, description="Seconds between logical fetch starts.")
    max_connections_per_host: int = Field(default=4, ge=1, description="Connection reuse limit per host.")
    multiplexing_enabled: bool = Field(default=True, description="Use HTTP/2 per-host clients for GET.")
    concurrent_processing_enabled: bool = Field(default=True, description="Parse large bodies off the worker.")
    concurrent_processing_threshold: int = Field(
        default=10_000, ge=0, description="Body size in bytes above which parsing is offloaded."
    )
    processing_workers: Optional[int] = Field(
        default=None, ge=1, description="Processing pool threads. None uses the CPU count (minimum 2)."
    )


class TransportConfig(BaseModel):
    """HTTP transport timeouts and identity."""

    model_config = ConfigDict(frozen=True)

    connect_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    concurrent_request_timeout: float = Field(
        default=45.0, gt=0, description="Per-attempt budget when concurrent processing is enabled."
    )
    follow_redirects: bool = True
    user_agent: str = Field(default="FetchCore/1.0", description="Default User-Agent header.")


class HealthConfig(BaseModel):
    """Health monitor period, warning thresholds and shutdown timeouts."""

    model_config = ConfigDict(frozen=True)

    check_interval: float = Field(default=30.0, gt=0, description="Seconds between health checks.")
    queue_high_water_mark: int = Field(default=100, ge=0)
    instability_factor: int = Field(default=2, ge=1, description="Replacements per target worker before warning.")
    processing_wait_timeout: float = Field(default=10.0, gt=0, description="Wait for an offloaded parse.")
    shutdown_grace_period: float = Field(default=60.0, ge=0)
    processing_shutdown_timeout: float = Field(default=10.0, ge=0)
    monitor_shutdown_timeout: float = Field(default=5.0, ge=0)


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics export."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    prometheus_port: int | None = Field(default=None, description="Port for Prometheus metrics exporter.")

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


class Config(BaseSettings):
    project_name: str = "FetchCore"
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="FETCHCORE_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    for name in ("fetchcore.yaml", "fetchcore.yml"):
        path = current_dir / name
        if path.exists():
            return path
    return None


def load_config() -> Config:
    """Load configuration from a file in the working directory or fall back to defaults."""
    config_path = find_config_file()
    if config_path:
        try:
            log.info("Loading configuration from: %s", config_path)
            return Config.from_yaml(config_path)
        except (ValidationError, yaml.YAMLError) as e:
            log.error(
                "Failed to load or validate configuration from '%s': %s. Falling back to default settings.",
                config_path,
                e,
                exc_info=log.getEffectiveLevel() <= logging.DEBUG,
            )
    else:
        log.info("No config file found. Using default settings.")
    return Config()
