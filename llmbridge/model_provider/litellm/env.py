"""Environment variable resolution for the LiteLLM gateway adapter.

Resolution priority:
1. Explicit config passed in code
2. LITELLM_* environment variables
3. Values from a .env file loaded with load_env_file() (never overrides
   variables that are already set)
4. Defaults
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# ============================================================
# Environment Variable Names
# ============================================================

ENV_LITELLM_URL = "LITELLM_URL"
ENV_LITELLM_API_KEY = "LITELLM_API_KEY"
ENV_LITELLM_TIMEOUT = "LITELLM_TIMEOUT"
ENV_LITELLM_MODE = "LITELLM_MODE"

DEFAULT_TIMEOUT = 120.0
DEFAULT_USER_AGENT = "llmbridge/0.1"

MODE_CHAT = "chat"
MODE_COMPLETIONS = "completions"
MODE_RESPONSES = "responses"


def load_env_file(path: Optional[str] = None) -> bool:
    """Load a .env file into the process environment.

    Args:
        path: File to load; python-dotenv searches upward from the CWD when None.

    Returns:
        True if a file was found and loaded.
    """
    return load_dotenv(dotenv_path=path, override=False)


def resolve_base_url() -> Optional[str]:
    """Resolve the gateway base URL, without a trailing slash."""
    value = os.environ.get(ENV_LITELLM_URL, "").strip()
    return value.rstrip("/") or None


def resolve_api_key() -> Optional[str]:
    """Resolve the gateway API key. The gateway may not require one."""
    return os.environ.get(ENV_LITELLM_API_KEY) or None


def resolve_timeout() -> float:
    """Resolve the request timeout in seconds."""
    value = os.environ.get(ENV_LITELLM_TIMEOUT)
    if not value:
        return DEFAULT_TIMEOUT
    try:
        return float(value)
    except ValueError:
        return DEFAULT_TIMEOUT


def resolve_mode() -> Optional[str]:
    """Resolve the default wire mode ("chat", "completions" or "responses")."""
    value = os.environ.get(ENV_LITELLM_MODE, "").strip().lower()
    if value in (MODE_CHAT, MODE_COMPLETIONS, MODE_RESPONSES):
        return value
    return None


@dataclass(frozen=True)
class LiteLLMConfig:
    """Connection settings for one gateway.

    Attributes:
        url: Gateway base URL (e.g. http://localhost:4000).
        key: Optional API key.
        timeout: Per-request timeout in seconds.
        user_agent: User-Agent header value.
        mode: Default wire mode when model info gives none.
    """
    url: Optional[str] = None
    key: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    mode: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> 'LiteLLMConfig':
        """Build a config from the environment; keyword overrides win."""
        values = {
            "url": resolve_base_url(),
            "key": resolve_api_key(),
            "timeout": resolve_timeout(),
            "mode": resolve_mode(),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if values.get("url"):
            values["url"] = values["url"].rstrip("/")
        return cls(**values)
