"""LiteLLM gateway client.

Ties the adapter together for one request:

    trim_to_budget -> request defaults -> translate_request
        -> RetryingTransport.send -> normalize -> Part iterator

Usage:
    from llmbridge.model_provider.litellm import LiteLLMClient
    from llmbridge.model_provider.types import ChatRequest, Message, Role

    client = LiteLLMClient()  # LITELLM_URL / LITELLM_API_KEY from env
    request = ChatRequest(model="gpt-4o", messages=[Message.from_text(Role.USER, "Hi")])
    for part in client.chat(request):
        print(part.text or part.function_call)
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional

import requests

from ...retry_utils import RetryCallback, RetryPolicy, parse_retry_after
from ...token_budget import DEFAULT_MAX_OUTPUT_TOKENS, TokenBudget, trim_to_budget
from ...trace import provider_trace
from ..types import CancelledException, CancelToken, ChatRequest, Part
from .capabilities import CapabilityCache, ModelInfo, parse_model_info
from .converters import endpoint_for_mode, translate_request
from .env import MODE_CHAT, MODE_COMPLETIONS, MODE_RESPONSES, LiteLLMConfig
from .errors import (
    OPTIONAL_PARAMETERS,
    ConfigurationError,
    RateLimitError,
    TransientTransportError,
    UnsupportedParameterError,
    UpstreamAPIError,
    error_from_response,
    parse_error_detail,
)
from .normalizer import normalize
from .tool_calls import IdGenerator, random_id
from .transport import RetryingTransport

logger = logging.getLogger(__name__)

MODEL_INFO_ENDPOINT = "/model/info"

# Sampling defaults applied when the caller leaves them unset and the
# model accepts them; the penalties curb repetitive loops
DEFAULT_TEMPERATURE = 0.7
DEFAULT_FREQUENCY_PENALTY = 0.2
DEFAULT_PRESENCE_PENALTY = 0.1

_KNOWN_MODES = (MODE_CHAT, MODE_COMPLETIONS, MODE_RESPONSES)


class LiteLLMClient:
    """Client for a LiteLLM proxy.

    Args:
        config: Connection settings; read from the environment when None.
        transport: Retrying transport; one with default settings when None.
        capabilities: Model info and parameter-support cache.
        policy: Retry policy for the default transport.
        on_retry: Retry notification callback for the default transport.
        id_generator: Synthetic tool-call id source.
    """

    def __init__(
        self,
        config: Optional[LiteLLMConfig] = None,
        transport: Optional[RetryingTransport] = None,
        capabilities: Optional[CapabilityCache] = None,
        policy: Optional[RetryPolicy] = None,
        on_retry: Optional[RetryCallback] = None,
        id_generator: IdGenerator = random_id,
    ):
        self._config = config or LiteLLMConfig.from_env()
        self._transport = transport or RetryingTransport(policy=policy, on_retry=on_retry)
        self.capabilities = capabilities or CapabilityCache()
        self._id_generator = id_generator

    @property
    def config(self) -> LiteLLMConfig:
        return self._config

    def _url(self, endpoint: str) -> str:
        if not self._config.url:
            raise ConfigurationError("LITELLM_URL")
        return f"{self._config.url}{endpoint}"

    def get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }
        if self._config.key:
            headers["Authorization"] = f"Bearer {self._config.key}"
            headers["X-API-Key"] = self._config.key
        return headers

    # ==================== Model Info ====================

    def get_model_info(self, cancel_token: Optional[CancelToken] = None) -> List[ModelInfo]:
        """Fetch /model/info and cache it for capability lookups.

        Raises:
            UpstreamAPIError: If the gateway answers with an error status.
        """
        response, _ = self._transport.send(
            self._url(MODEL_INFO_ENDPOINT),
            method="GET",
            headers=self.get_headers(),
            timeout=self._config.timeout,
            stream=False,
            cancel_token=cancel_token,
            context="model_info",
        )
        try:
            if not response.ok:
                raise UpstreamAPIError(
                    response.status_code,
                    f"Failed to fetch model info: {parse_error_detail(response.status_code, response.text)}",
                )
            infos = parse_model_info(response.json())
        finally:
            response.close()

        self.capabilities.remember(infos)
        logger.debug("Loaded info for %d models", len(infos))
        return infos

    def resolve_mode(self, model_id: str) -> Optional[str]:
        """Wire mode for a model: its advertised mode, else the configured one."""
        info = self.capabilities.get(model_id)
        if info is not None and info.mode in _KNOWN_MODES:
            return info.mode
        return self._config.mode

    # ==================== Request Preparation ====================

    def prepare_request(self, request: ChatRequest, info: Optional[ModelInfo] = None) -> ChatRequest:
        """Apply sampling defaults and clamp ``max_tokens`` to the model's limit."""
        model = request.model
        supported = self.capabilities.is_parameter_supported
        max_output = info.max_output_tokens if info else DEFAULT_MAX_OUTPUT_TOKENS

        changes: Dict[str, Any] = {
            "max_tokens": min(request.max_tokens, max_output) if request.max_tokens is not None else max_output,
        }
        if request.temperature is None and supported("temperature", model):
            changes["temperature"] = DEFAULT_TEMPERATURE
        if request.frequency_penalty is None and supported("frequency_penalty", model):
            changes["frequency_penalty"] = DEFAULT_FREQUENCY_PENALTY
        if request.presence_penalty is None and supported("presence_penalty", model):
            changes["presence_penalty"] = DEFAULT_PRESENCE_PENALTY
        return replace(request, **changes)

    # ==================== Sending ====================

    def send(
        self,
        body: Dict[str, Any],
        mode: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
        model: Optional[str] = None,
    ) -> requests.Response:
        """POST a wire body to the endpoint for ``mode``.

        Returns:
            The streaming response (status 2xx). The caller closes it.

        Raises:
            RateLimitError: 429s outlasted the backoff budget.
            TransientTransportError: 5xx/network failures outlasted retries.
            UnsupportedParameterError: The gateway rejected an optional
                parameter.
            UpstreamAPIError: Any other error status.
            CancelledException: The token was cancelled.
        """
        url = self._url(endpoint_for_mode(mode))
        response, stats = self._transport.send(
            url,
            body,
            headers=self.get_headers(),
            timeout=self._config.timeout,
            stream=bool(body.get("stream", True)),
            cancel_token=cancel_token,
            context="chat",
        )
        if response.ok:
            return response

        try:
            text = response.text
        finally:
            response.close()
        detail = parse_error_detail(response.status_code, text)

        if response.status_code == 429:
            raise RateLimitError(
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                cumulative_delay=stats.rate_limit_delay,
                original_error=detail,
            )
        if response.status_code >= 500:
            raise TransientTransportError(response.status_code, attempts=stats.attempts, original_error=detail)
        raise error_from_response(response.status_code, text, model)

    def chat(
        self,
        request: ChatRequest,
        cancel_token: Optional[CancelToken] = None,
        mode: Optional[str] = None,
    ) -> Iterator[Part]:
        """Run one chat request and stream its canonical output parts.

        Everything up to the response headers happens before this returns,
        so budget, configuration and HTTP errors raise here; stream errors
        raise while iterating.

        Args:
            request: Canonical request.
            cancel_token: Cancels retries, the request, and the stream read.
            mode: Wire mode override ("chat", "completions", "responses").

        Returns:
            Lazy, single-use iterator of text and function-call parts.

        Raises:
            ValueError: If the request has no messages.
            BudgetExceededError: If the conversation cannot fit the model.
        """
        if not request.messages:
            raise ValueError("Invalid request: no messages.")
        model = request.model
        info = self.capabilities.get(model)

        budget = TokenBudget.for_model(
            model,
            max_input_tokens=info.max_input_tokens if info else None,
            tools=request.tools,
            provider=info.provider if info else None,
        )
        messages = trim_to_budget(request.messages, budget)
        prepared = self.prepare_request(replace(request, messages=messages), info)

        mode = mode or self.resolve_mode(model)
        body = translate_request(prepared, mode, self.capabilities.is_parameter_supported)
        removed = self.capabilities.strip_unsupported_parameters(body, model)
        if removed:
            logger.debug("Stripped unsupported parameters for %s: %s", model, removed)

        provider_trace(
            "litellm",
            f"STREAM_START model={model} mode={mode or MODE_CHAT} messages={len(messages)}/{len(request.messages)} "
            f"tools={len(request.tools)} budget={budget.limit}",
        )
        try:
            response = self.send(body, mode, cancel_token, model)
        except UnsupportedParameterError as exc:
            stripped = [p for p in OPTIONAL_PARAMETERS if body.pop(p, None) is not None]
            logger.warning("Retrying %s without optional parameters %s: %s", model, stripped, exc.detail)
            if exc.parameters:
                self.capabilities.record_rejected(model, exc.parameters)
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            response = self.send(body, mode, cancel_token, model)

        return self._stream(response, cancel_token)

    def _stream(self, response: requests.Response, cancel_token: Optional[CancelToken]) -> Iterator[Part]:
        body = self._iter_body(response, cancel_token)
        try:
            yield from normalize(body, cancel_token, self._id_generator)
        finally:
            body.close()
            response.close()

    @staticmethod
    def _iter_body(response: requests.Response, cancel_token: Optional[CancelToken]) -> Iterator[bytes]:
        unregister = cancel_token.on_cancel(response.close) if cancel_token else (lambda: None)
        try:
            for chunk in response.iter_content(chunk_size=None):
                if chunk:
                    yield chunk
        except Exception as exc:
            # Closing the response from another thread breaks the read
            if cancel_token is not None and cancel_token.is_cancelled:
                provider_trace("litellm", "STREAM_CANCELLED")
                raise CancelledException() from exc
            raise
        finally:
            unregister()
            response.close()

    def close(self) -> None:
        self._transport.close()
