"""Utility modules for FetchCore."""

from .counters import AtomicCounter

__all__ = ["AtomicCounter"]
