"""
Fetch machinery used by the engine.

- retry: pure retry/backoff decisions
- rate_limiter: fixed-interval throttle on logical fetch starts
- http_client: HTTP/1.1 client plus the transport router
- multiplex: per-host HTTP/2 clients
- response_processor: inline or pooled body parsing
"""

from .http_client import HttpClient, HttpTransport
from .multiplex import MultiplexedClient
from .rate_limiter import RateLimiter
from .response_processor import ResponseProcessor, parse_body
from .retry import delay_for, should_retry

__all__ = [
    "HttpClient",
    "HttpTransport",
    "MultiplexedClient",
    "RateLimiter",
    "ResponseProcessor",
    "delay_for",
    "parse_body",
    "should_retry",
]
