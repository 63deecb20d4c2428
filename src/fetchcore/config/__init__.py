"""Configuration models and loaders."""

from .config import (
    Config,
    HealthConfig,
    MonitoringConfig,
    PoolConfig,
    RetryPolicy,
    TransportConfig,
    find_config_file,
    load_config,
)

__all__ = [
    "Config",
    "HealthConfig",
    "MonitoringConfig",
    "PoolConfig",
    "RetryPolicy",
    "TransportConfig",
    "find_config_file",
    "load_config",
]
