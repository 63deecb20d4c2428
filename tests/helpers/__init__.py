"""Shared test helpers."""

from .fake_transport import FakeTransport, SentRequest, json_response
from .metric_delta import histogram_observes, metric_delta

__all__ = ["FakeTransport", "SentRequest", "histogram_observes", "json_response", "metric_delta"]
