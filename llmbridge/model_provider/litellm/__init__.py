"""LiteLLM gateway adapter.

Talks to a LiteLLM proxy over either of its wire shapes:

- ``/chat/completions`` (mode "chat" or "completions", the default)
- ``/responses`` (mode "responses")

Streams are normalized into canonical ``Part`` objects, with fragmented
and inline-embedded tool calls reassembled along the way.
"""

from .client import LiteLLMClient
from .converters import translate_request
from .env import LiteLLMConfig, load_env_file
from .errors import (
    BudgetExceededError,
    CancelledException,
    ConfigurationError,
    InvalidToolArgumentsError,
    LiteLLMError,
    MalformedFrameError,
    RateLimitError,
    TransientTransportError,
    UnsupportedParameterError,
    UpstreamAPIError,
)
from .normalizer import normalize
from .transport import RetryingTransport

__all__ = [
    "BudgetExceededError",
    "CancelledException",
    "ConfigurationError",
    "InvalidToolArgumentsError",
    "LiteLLMClient",
    "LiteLLMConfig",
    "LiteLLMError",
    "MalformedFrameError",
    "RateLimitError",
    "RetryingTransport",
    "TransientTransportError",
    "UnsupportedParameterError",
    "UpstreamAPIError",
    "load_env_file",
    "normalize",
    "translate_request",
]
