"""HTTP transport with transient retry and rate-limit backoff.

One ``send`` call runs two nested loops:

- the inner loop retries 5xx responses and network failures
  ``max_transient_retries`` times, ``transient_delay`` apart;
- the outer loop retries 429 responses, sleeping for the Retry-After hint
  or an exponential fallback, until ``max_cumulative_rate_limit_delay`` is
  spent. The last 429 is then returned as-is.

A CancelToken aborts a pending sleep or an in-flight request immediately
with CancelledException. Each request runs on its own daemon thread so the
caller is released at once; the abandoned response is closed when it
arrives.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from ...http import get_requests_kwargs, get_requests_session
from ...retry_utils import (
    RetryCallback,
    RetryPolicy,
    RetryStats,
    interruptible_sleep,
    parse_retry_after,
    rate_limit_delay,
)
from ...trace import provider_trace
from ..types import CancelledException, CancelToken
from .errors import TransientTransportError

logger = logging.getLogger(__name__)

# Signature: (seconds, cancel_token) -> None; raises CancelledException
Sleeper = Callable[[float, Optional[CancelToken]], None]


def _close_abandoned(future: Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()


class RetryingTransport:
    """Executes gateway requests under a RetryPolicy.

    Args:
        session: requests session; defaults to one configured for the
            environment's proxy and CA bundle settings.
        policy: Default retry policy for calls that don't pass one.
        sleeper: Cancellable sleep, injectable for tests.
        on_retry: Optional retry notification callback.
            Signature: (message, attempt, max_attempts, delay) -> None
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        policy: Optional[RetryPolicy] = None,
        sleeper: Sleeper = interruptible_sleep,
        on_retry: Optional[RetryCallback] = None,
    ):
        self._session = session or get_requests_session()
        self.policy = policy or RetryPolicy()
        self._sleep = sleeper
        self._on_retry = on_retry

    @property
    def session(self) -> requests.Session:
        return self._session

    def send(
        self,
        url: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        stream: bool = True,
        policy: Optional[RetryPolicy] = None,
        cancel_token: Optional[CancelToken] = None,
        context: str = "request",
    ) -> Tuple[requests.Response, RetryStats]:
        """Send one request, retrying per the policy.

        Args:
            url: Absolute request URL.
            body: JSON body.
            method: HTTP method.
            headers: Request headers.
            timeout: Per-attempt timeout in seconds.
            stream: Leave the body unread for streaming.
            policy: Overrides the transport's default policy.
            cancel_token: Aborts the call and any backoff wait.
            context: Short label for retry messages (e.g. "chat").

        Returns:
            Tuple of (final response, RetryStats). The response may be a
            5xx after transient retries are exhausted, or a 429 after the
            rate-limit budget is spent.

        Raises:
            CancelledException: If the token is cancelled.
            TransientTransportError: If network failures outlast the
                transient retries.
        """
        policy = policy or self.policy
        stats = RetryStats()
        rate_limit_attempt = 0
        request_kwargs = dict(
            method=method, url=url, json=body, headers=headers,
            stream=stream, timeout=timeout, **get_requests_kwargs(url),
        )

        while True:
            response = self._send_with_transient_retry(request_kwargs, policy, stats, cancel_token, context)
            if response.status_code != 429:
                return response, stats

            stats.rate_limit_errors += 1
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            delay = rate_limit_delay(rate_limit_attempt, policy, retry_after, stats.rate_limit_delay)
            stats.errors.append({
                "attempt": stats.attempts,
                "status_code": 429,
                "retry_after": retry_after,
            })
            if delay is None:
                logger.warning("%s: rate limit budget of %.1fs exhausted", context,
                               policy.max_cumulative_rate_limit_delay)
                provider_trace("litellm", f"RATE_LIMIT_EXHAUSTED waited={stats.rate_limit_delay:.3f}s")
                return response, stats

            response.close()
            rate_limit_attempt += 1
            stats.rate_limit_delay += delay
            self._notify(
                f"[Retry {rate_limit_attempt}] {context} (rate-limit): HTTP 429 | sleep {delay:.2f}s",
                rate_limit_attempt, 0, delay,
            )
            self._sleep(delay, cancel_token)

    def _send_with_transient_retry(
        self,
        request_kwargs: Dict[str, Any],
        policy: RetryPolicy,
        stats: RetryStats,
        cancel_token: Optional[CancelToken],
        context: str,
    ) -> requests.Response:
        max_attempts = policy.max_transient_retries + 1
        for attempt in range(1, max_attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            stats.attempts += 1

            try:
                response = self._request(request_kwargs, cancel_token)
            except requests.RequestException as exc:
                if cancel_token is not None and cancel_token.is_cancelled:
                    raise CancelledException() from exc
                stats.transient_errors += 1
                stats.errors.append({
                    "attempt": stats.attempts,
                    "error": str(exc)[:200],
                    "error_type": exc.__class__.__name__,
                })
                if attempt == max_attempts:
                    raise TransientTransportError(0, attempts=attempt, original_error=str(exc)) from exc
                detail = f"{exc.__class__.__name__}: {str(exc)[:140]}"
            else:
                if response.status_code < 500:
                    return response
                stats.transient_errors += 1
                stats.errors.append({"attempt": stats.attempts, "status_code": response.status_code})
                if attempt == max_attempts:
                    return response
                response.close()
                detail = f"HTTP {response.status_code}"

            self._notify(
                f"[Retry {attempt}/{policy.max_transient_retries}] {context} (transient): "
                f"{detail} | sleep {policy.transient_delay:.2f}s",
                attempt, policy.max_transient_retries, policy.transient_delay,
            )
            self._sleep(policy.transient_delay, cancel_token)

        raise RuntimeError("Retry loop exited without result or exception")

    def _request(
        self,
        request_kwargs: Dict[str, Any],
        cancel_token: Optional[CancelToken],
    ) -> requests.Response:
        if cancel_token is None:
            return self._session.request(**request_kwargs)

        future: Future = Future()

        def run() -> None:
            try:
                future.set_result(self._session.request(**request_kwargs))
            except Exception as exc:
                future.set_exception(exc)

        wake = threading.Event()
        future.add_done_callback(lambda _: wake.set())
        unregister = cancel_token.on_cancel(wake.set)
        threading.Thread(target=run, daemon=True, name="llmbridge-http").start()
        try:
            wake.wait()
        finally:
            unregister()

        if cancel_token.is_cancelled:
            future.add_done_callback(_close_abandoned)
            provider_trace("litellm", "REQUEST_CANCELLED in flight")
            raise CancelledException()
        return future.result()

    def _notify(self, message: str, attempt: int, max_attempts: int, delay: float) -> None:
        logger.warning(message)
        provider_trace("litellm", message)
        if self._on_retry:
            self._on_retry(message, attempt, max_attempts, delay)

    def close(self) -> None:
        """Close the session."""
        self._session.close()
