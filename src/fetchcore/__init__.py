"""
FetchCore - fault-tolerant concurrent HTTP fetch engine.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config, load_config
from .engine import FetchEngine, FetchEngineError, group_urls_by_host
from .protocols import FetchResult, PoolHealth

__all__ = [
    "__version__",
    "Config",
    "FetchEngine",
    "FetchEngineError",
    "FetchResult",
    "PoolHealth",
    "group_urls_by_host",
    "load_config",
]
