"""Per-model parameter support for the LiteLLM gateway.

Some upstream models reject sampling parameters (Claude rejects
``temperature`` through some gateways, reasoning models reject most of
them). This module answers ``is_parameter_supported(name, model_id)`` from:

1. a table of known limitations (substring match on the model id),
2. parameters the gateway rejected earlier in this process (rejection cache),
3. the model's advertised ``supported_openai_params`` from /model/info.

Anything not ruled out is assumed supported.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from ...token_budget import DEFAULT_CONTEXT_LENGTH, DEFAULT_MAX_OUTPUT_TOKENS

_NO_SAMPLING = frozenset({"temperature", "top_p", "presence_penalty", "frequency_penalty"})
_NO_TEMPERATURE = frozenset({"temperature"})
_CODEX = frozenset({"temperature", "frequency_penalty", "presence_penalty"})

KNOWN_PARAMETER_LIMITATIONS: Dict[str, FrozenSet[str]] = {
    "claude-3-5-sonnet": _NO_TEMPERATURE,
    "claude-3-5-haiku": _NO_TEMPERATURE,
    "claude-3-opus": _NO_TEMPERATURE,
    "claude-3-sonnet": _NO_TEMPERATURE,
    "claude-3-haiku": _NO_TEMPERATURE,
    "claude-haiku-4-5": _NO_TEMPERATURE,
    "gpt-5.1-codex": _CODEX,
    "gpt-5.1-codex-mini": _CODEX,
    "gpt-5.1-codex-max": _CODEX,
    "codex-mini-latest": _CODEX,
    "o1-preview": _NO_SAMPLING,
    "o1-mini": _NO_SAMPLING,
    "o1-": _NO_SAMPLING,
}

CHECKED_PARAMETERS = ("temperature", "stop", "frequency_penalty", "presence_penalty", "top_p")


@dataclass(frozen=True)
class ModelInfo:
    """Model metadata reported by the gateway's /model/info endpoint."""
    model_id: str
    max_input_tokens: int = DEFAULT_CONTEXT_LENGTH
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    mode: Optional[str] = None
    provider: Optional[str] = None
    supports_function_calling: bool = True
    supports_vision: bool = False
    supported_openai_params: Optional[List[str]] = None


def parse_model_info(payload: Dict[str, Any]) -> List[ModelInfo]:
    """Parse a /model/info response body.

    Args:
        payload: ``{"data": [{"model_name": ..., "model_info": {...}}, ...]}``

    Returns:
        One ModelInfo per entry, in response order.
    """
    infos: List[ModelInfo] = []
    for index, entry in enumerate(payload.get("data") or []):
        if not isinstance(entry, dict):
            continue
        raw = entry.get("model_info") or {}
        model_id = raw.get("key") or entry.get("model_name") or f"model-{index}"
        params = raw.get("supported_openai_params")
        infos.append(ModelInfo(
            model_id=model_id,
            max_input_tokens=max(1, raw.get("max_input_tokens") or DEFAULT_CONTEXT_LENGTH),
            max_output_tokens=max(1, raw.get("max_output_tokens") or DEFAULT_MAX_OUTPUT_TOKENS),
            mode=raw.get("mode"),
            provider=raw.get("litellm_provider"),
            supports_function_calling=raw.get("supports_function_calling") is not False,
            supports_vision=raw.get("supports_vision") is True,
            supported_openai_params=list(params) if isinstance(params, list) else None,
        ))
    return infos


@dataclass
class CapabilityCache:
    """Model info and learned parameter rejections, shared by one client."""
    model_info: Dict[str, ModelInfo] = field(default_factory=dict)
    rejected: Dict[str, Set[str]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def remember(self, infos: Iterable[ModelInfo]) -> None:
        with self._lock:
            for info in infos:
                self.model_info[info.model_id] = info

    def get(self, model_id: str) -> Optional[ModelInfo]:
        return self.model_info.get(model_id)

    def record_rejected(self, model_id: str, parameters: Iterable[str]) -> None:
        """Remember parameters the gateway rejected for ``model_id``."""
        with self._lock:
            self.rejected.setdefault(model_id, set()).update(parameters)

    def is_parameter_supported(self, name: str, model_id: str) -> bool:
        """Whether ``name`` may be sent for ``model_id``."""
        for known_model, limitations in KNOWN_PARAMETER_LIMITATIONS.items():
            if known_model in model_id and name in limitations:
                return False

        if name in self.rejected.get(model_id, ()):
            return False

        info = self.model_info.get(model_id)
        if info is not None and info.supported_openai_params is not None:
            return name in info.supported_openai_params

        return True

    def strip_unsupported_parameters(self, body: Dict[str, Any], model_id: str) -> List[str]:
        """Remove unsupported optional parameters from a wire body in place.

        Returns:
            Names of the removed parameters.
        """
        removed = []
        for name in CHECKED_PARAMETERS:
            if name in body and not self.is_parameter_supported(name, model_id):
                del body[name]
                removed.append(name)
        return removed
