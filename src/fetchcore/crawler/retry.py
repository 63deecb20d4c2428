"""
Retry/backoff decisions for fetch attempts.

Both functions are pure: the caller owns the wait between attempts.
"""

from __future__ import annotations

from typing import Optional

from fetchcore.config.config import RetryPolicy
from fetchcore.protocols import FetchResult


def is_retryable_error(error: Optional[str], policy: RetryPolicy) -> bool:
    """True when a transport error description names a transient network fault."""
    if not error:
        return False
    lowered = error.lower()
    return any(marker in lowered for marker in policy.retryable_error_markers)


def should_retry(result: FetchResult, attempt: int, policy: RetryPolicy) -> bool:
    """
    Decide whether another attempt should follow ``attempt`` (zero-based).

    A successful result is never retried. Otherwise a retry needs attempts
    left and either a retryable status or a retryable transport error.
    """
    if result.successful:
        return False
    if attempt >= policy.max_retries:
        return False
    if result.status_code in policy.retryable_status_codes:
        return True
    return is_retryable_error(result.error, policy)


def delay_for(attempt: int, policy: RetryPolicy) -> float:
    """Seconds to wait before the attempt following ``attempt``."""
    return policy.base_delay * (policy.backoff_multiplier**attempt)
