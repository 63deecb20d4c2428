"""
Helpers shared by both transports for shaping responses and errors.
"""

from __future__ import annotations

from typing import Dict, Iterable, Tuple


def merge_headers(items: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Lower-case header names and join repeated values with ``", "``."""
    merged: Dict[str, str] = {}
    for name, value in items:
        key = name.lower()
        if key in merged:
            merged[key] = f"{merged[key]}, {value}"
        else:
            merged[key] = value
    return merged


def describe_error(exc: BaseException) -> str:
    """Error description stored on results and matched against retry markers."""
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
