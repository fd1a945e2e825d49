"""Retry utilities for transient gateway errors and rate limiting.

Two nested policies are described by a single RetryPolicy:

- transient retry: 5xx responses and network failures are retried a fixed
  number of times with a fixed delay between attempts;
- rate-limit backoff: 429 responses are retried with a delay taken from the
  upstream Retry-After hint, or an exponential fallback, until a cumulative
  delay budget is spent.

All waits go through interruptible_sleep() so a CancelToken aborts them
immediately instead of after the delay elapses.

Usage:
    from llmbridge.retry_utils import RetryPolicy, rate_limit_delay

    policy = RetryPolicy(max_transient_retries=3)
    delay = rate_limit_delay(attempt, policy, retry_after, cumulative)

Environment Variables:
    LITELLM_TRANSIENT_RETRIES: Max retries on 5xx/network errors (default: 2)
    LITELLM_TRANSIENT_DELAY: Delay between transient retries, seconds (default: 1.0)
    LITELLM_RATE_LIMIT_MAX_DELAY: Cumulative 429 backoff budget, seconds (default: 120.0)
    LITELLM_RATE_LIMIT_INITIAL_DELAY: First exponential 429 delay, seconds (default: 0.5)
"""

import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

from .model_provider.types import CancelledException, CancelToken

# Type alias for retry callback - client provides this to handle retry notifications
# Signature: (message: str, attempt: int, max_attempts: int, delay: float) -> None
RetryCallback = Callable[[str, int, int, float], None]

# Smallest delay ever slept for a 429, so a "Retry-After: 0" still yields
MIN_RATE_LIMIT_DELAY = 0.001


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior. All delays are in seconds."""
    max_transient_retries: int = field(
        default_factory=lambda: int(os.environ.get("LITELLM_TRANSIENT_RETRIES", "2")))
    transient_delay: float = field(
        default_factory=lambda: _env_float("LITELLM_TRANSIENT_DELAY", "1.0"))
    max_cumulative_rate_limit_delay: float = field(
        default_factory=lambda: _env_float("LITELLM_RATE_LIMIT_MAX_DELAY", "120.0"))
    initial_rate_limit_delay: float = field(
        default_factory=lambda: _env_float("LITELLM_RATE_LIMIT_INITIAL_DELAY", "0.5"))


@dataclass
class RetryStats:
    """Statistics from one transport call."""
    attempts: int = 0
    transient_errors: int = 0
    rate_limit_errors: int = 0
    rate_limit_delay: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)


def interruptible_sleep(
    seconds: float,
    cancel_token: Optional[CancelToken] = None,
) -> None:
    """Sleep for ``seconds`` unless cancellation is requested first.

    Args:
        seconds: Time to sleep.
        cancel_token: Optional token; cancelling it wakes the sleeper at once.

    Raises:
        CancelledException: If the token is (or becomes) cancelled.
    """
    if cancel_token is None:
        time.sleep(seconds)
        return
    cancel_token.raise_if_cancelled()
    if cancel_token.wait(timeout=seconds):
        raise CancelledException()


def parse_retry_after(
    value: Optional[str],
    now: Optional[datetime] = None,
) -> Optional[float]:
    """Parse a Retry-After header into a delay in seconds.

    Accepts either a non-negative number of seconds or an HTTP date. A date
    in the past (or now) yields None, as does anything unparseable.

    Args:
        value: Raw header value.
        now: Reference time for HTTP dates (defaults to current UTC time).

    Returns:
        Delay in seconds, or None when no usable hint is present.
    """
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if seconds >= 0:
            return seconds
        return None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    delta = (when - now).total_seconds()
    if delta > 0:
        return delta
    return None


def rate_limit_delay(
    attempt: int,
    policy: RetryPolicy,
    retry_after: Optional[float],
    cumulative_delay: float,
) -> Optional[float]:
    """Calculate the delay before retrying a 429 response.

    The upstream hint wins over the exponential fallback
    (``initial_rate_limit_delay * 2 ** attempt``). The result is clamped to
    what is left of the cumulative budget.

    Args:
        attempt: Number of 429 retries already made (0-indexed).
        policy: Retry policy.
        retry_after: Parsed Retry-After hint in seconds, if any.
        cumulative_delay: Delay already spent on 429s for this call.

    Returns:
        Delay in seconds, or None when the budget is exhausted.
    """
    remaining = policy.max_cumulative_rate_limit_delay - cumulative_delay
    if remaining <= 0:
        return None
    if retry_after is not None:
        chosen = retry_after
    else:
        chosen = policy.initial_rate_limit_delay * (2 ** attempt)
    return min(max(MIN_RATE_LIMIT_DELAY, chosen), remaining)


__all__ = [
    'RetryCallback',
    'RetryPolicy',
    'RetryStats',
    'interruptible_sleep',
    'parse_retry_after',
    'rate_limit_delay',
]
