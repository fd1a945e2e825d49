"""Error types for the LiteLLM gateway adapter.

Each exception carries the structured fields a caller needs to decide on a
fallback (status code, offending parameters, retry hints) plus a readable
multi-line message.
"""

import json
import re
from typing import List, Optional

from ...exceptions import LiteLLMError
from ...token_budget import BudgetExceededError  # noqa: F401
from ..types import CancelledException  # noqa: F401


class ConfigurationError(LiteLLMError):
    """Required gateway configuration is missing."""

    def __init__(self, missing: str):
        self.missing = missing
        super().__init__(
            f"LiteLLM configuration not found: {missing}\n"
            f"Set LITELLM_URL (and LITELLM_API_KEY if the gateway requires one)."
        )


class TransientTransportError(LiteLLMError):
    """5xx response or network failure that survived every retry.

    Attributes:
        status_code: HTTP status, or 0 for a network-level failure.
        attempts: Number of attempts made.
    """

    def __init__(
        self,
        status_code: int,
        attempts: int = 1,
        original_error: Optional[str] = None,
    ):
        self.status_code = status_code
        self.attempts = attempts
        self.original_error = original_error

        message = self._format_message()
        super().__init__(message)

    def _format_message(self) -> str:
        if self.status_code == 0:
            lines = ["LiteLLM gateway network error."]
        else:
            lines = [f"LiteLLM gateway infrastructure error (HTTP {self.status_code})."]

        lines.append(f"Attempts: {self.attempts}")
        if self.original_error:
            lines.append(f"Error: {self.original_error}")

        return "\n".join(lines)


class RateLimitError(LiteLLMError):
    """429 responses persisted past the cumulative backoff budget."""

    def __init__(
        self,
        retry_after: Optional[float] = None,
        cumulative_delay: float = 0.0,
        original_error: Optional[str] = None,
    ):
        self.retry_after = retry_after
        self.cumulative_delay = cumulative_delay
        self.original_error = original_error

        message = self._format_message()
        super().__init__(message)

    def _format_message(self) -> str:
        lines = ["LiteLLM gateway rate limit exceeded."]

        if self.retry_after is not None:
            lines.append(f"Retry after: {self.retry_after:g} seconds")
        lines.append(f"Waited: {self.cumulative_delay:.2f} seconds in total")
        if self.original_error:
            lines.append(f"Error: {self.original_error}")

        return "\n".join(lines)


class UpstreamAPIError(LiteLLMError):
    """Non-retryable error response from the gateway."""

    def __init__(self, status_code: int, detail: str, model: Optional[str] = None):
        self.status_code = status_code
        self.detail = detail
        self.model = model

        prefix = f"LiteLLM Error ({model})" if model else "LiteLLM API error"
        super().__init__(f"{prefix}: HTTP {status_code}: {detail}")


class UnsupportedParameterError(UpstreamAPIError):
    """The gateway rejected an optional request parameter.

    Attributes:
        parameters: Parameter names found in the error message (may be empty
            when the message does not name them).
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        parameters: Optional[List[str]] = None,
        model: Optional[str] = None,
    ):
        self.parameters = parameters or []
        super().__init__(status_code, detail, model=model)


class InvalidToolArgumentsError(LiteLLMError):
    """A tool call's arguments were not a JSON object when the upstream
    declared the response finished."""

    def __init__(self, index: int, name: Optional[str], raw_arguments: str):
        self.index = index
        self.name = name
        self.raw_arguments = raw_arguments
        preview = raw_arguments[:200]
        super().__init__(
            f"Invalid JSON for tool call {name or 'unknown_tool'} (index {index}): {preview!r}"
        )


class MalformedFrameError(LiteLLMError):
    """A streamed data line was not valid JSON. Never escapes the decoder."""

    def __init__(self, payload: str):
        self.payload = payload
        super().__init__(f"Malformed stream frame: {payload[:120]!r}")


OPTIONAL_PARAMETERS = ("temperature", "top_p", "frequency_penalty", "presence_penalty", "stop")

_UNSUPPORTED_MARKERS = ("unsupported parameter", "not supported", "unsupported value")


def parse_error_detail(status_code: int, body: str) -> str:
    """Extract a human-readable message from an error response body.

    Args:
        status_code: HTTP status of the response.
        body: Raw response text.

    Returns:
        ``error.message`` from a JSON body, else the first 200 characters of
        the body, else a generic message.
    """
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    if body:
        return body[:200]
    return f"API request failed with status {status_code}"


def error_from_response(status_code: int, body: str, model: Optional[str] = None) -> UpstreamAPIError:
    """Classify a non-2xx, non-retryable response."""
    detail = parse_error_detail(status_code, body)
    lowered = detail.lower()
    if 400 <= status_code < 500 and any(m in lowered for m in _UNSUPPORTED_MARKERS):
        named = [p for p in OPTIONAL_PARAMETERS if re.search(rf"\b{p}\b", lowered)]
        return UnsupportedParameterError(status_code, detail, parameters=named, model=model)
    return UpstreamAPIError(status_code, detail, model=model)
