"""Provider-agnostic types for chat-completion requests and responses.

This module defines the canonical request/response model that callers build
before any wire translation happens. Nothing here knows about a particular
gateway's JSON shape; the adapter packages under ``llmbridge.model_provider``
convert to and from these types.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union


class Role(str, Enum):
    """Message role in a conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"  # Tool result sent back to the model


class ToolChoice(str, Enum):
    """How the model is allowed to pick tools."""
    AUTO = "auto"
    REQUIRED = "required"


@dataclass(frozen=True)
class ToolSchema:
    """Provider-agnostic tool/function declaration.

    Attributes:
        name: Unique tool name (e.g., 'read_file').
        description: Human-readable description of what the tool does.
        parameters: JSON Schema object describing the tool's parameters.
    """
    name: str
    description: str = ""
    parameters: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class FunctionCall:
    """A function/tool call requested by the model.

    Attributes:
        id: Unique identifier for this call (used for result correlation).
        name: Name of the function to call.
        args: Arguments to pass to the function. Always a JSON object.
    """
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Part:
    """A part of a message or of a streamed response.

    Exactly one field is set. Request messages use ``text`` and
    ``inline_data``; the streaming normalizer only ever produces ``text``
    and ``function_call`` parts.

    Attributes:
        text: Text content.
        function_call: A function call from the model.
        inline_data: Binary data with mime type (images).
            Shape: ``{"mime_type": str, "data": bytes}``.
    """
    text: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    inline_data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_text(cls, text: str) -> 'Part':
        """Create a text part."""
        return cls(text=text)

    @classmethod
    def from_function_call(cls, call: FunctionCall) -> 'Part':
        """Create a function call part."""
        return cls(function_call=call)

    @classmethod
    def from_image(cls, mime_type: str, data: bytes) -> 'Part':
        """Create an image part."""
        return cls(inline_data={"mime_type": mime_type, "data": data})

    @property
    def is_image(self) -> bool:
        return bool(self.inline_data) and str(
            self.inline_data.get("mime_type", "")).startswith("image/")


@dataclass(frozen=True)
class Message:
    """A message in a conversation.

    Attributes:
        role: The role of the message sender.
        parts: Ordered text/image segments.
        tool_calls: Calls requested by the model (assistant messages only).
        tool_call_id: The call this message answers (tool messages only).
    """
    role: Role
    parts: List[Part] = field(default_factory=list)
    tool_calls: List[FunctionCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    @classmethod
    def from_text(cls, role: Union[Role, str], text: str) -> 'Message':
        """Create a simple text message."""
        if isinstance(role, str):
            role = Role(role)
        return cls(role=role, parts=[Part.from_text(text)])

    @classmethod
    def tool_result(cls, call_id: str, text: str) -> 'Message':
        """Create a tool-result message answering ``call_id``."""
        return cls(role=Role.TOOL, parts=[Part.from_text(text)], tool_call_id=call_id)

    @property
    def text(self) -> Optional[str]:
        """Extract concatenated text from all text parts."""
        texts = [p.text for p in self.parts if p.text]
        return ''.join(texts) if texts else None

    @property
    def images(self) -> List[Part]:
        return [p for p in self.parts if p.is_image]


@dataclass
class ChatRequest:
    """Canonical chat request, before wire translation.

    Sampling parameters left as None are not sent unless the adapter
    applies a default for them.

    Attributes:
        model: Model ID as known to the gateway.
        messages: Ordered conversation.
        tools: Tool declarations the model may call.
        tool_choice: Tool selection policy (ignored when there are no tools).
        max_tokens: Output token cap.
        temperature: Sampling temperature.
        top_p: Nucleus sampling parameter.
        frequency_penalty: Frequency penalty.
        presence_penalty: Presence penalty.
        stop: Stop sequence(s).
        stream: Request a streamed response.
    """
    model: str
    messages: List[Message] = field(default_factory=list)
    tools: List[ToolSchema] = field(default_factory=list)
    tool_choice: ToolChoice = ToolChoice.AUTO
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    stream: bool = True


class CancelledException(Exception):
    """Raised when an operation is cancelled via CancelToken."""

    def __init__(self, message: str = "Operation was cancelled"):
        self.message = message
        super().__init__(self.message)


class CancelToken:
    """Thread-safe cancellation token for stopping operations.

    Used to signal cancellation requests across threads. Supports:
    - Simple cancellation via cancel()
    - Polling via is_cancelled property
    - Blocking wait via wait()
    - Callback registration for cancellation notifications

    Example:
        token = CancelToken()

        # In worker thread
        for part in client.chat(request, cancel_token=token):
            handle(part)

        # In main thread
        token.cancel()  # Aborts the in-flight read and any pending backoff

    Thread Safety:
        All methods are thread-safe and can be called from any thread.
    """

    def __init__(self):
        """Initialize a new cancel token."""
        self._cancelled = False
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation.

        This is idempotent - calling cancel() multiple times has no effect
        after the first call. All registered callbacks are invoked once.
        """
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        # Set event to wake up any waiters
        self._event.set()

        # Invoke callbacks outside lock to avoid deadlock
        for callback in callbacks:
            try:
                callback()
            except Exception:
                pass  # Swallow callback errors

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested.

        Returns:
            True if cancel() has been called, False otherwise.
        """
        return self._cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for cancellation or timeout.

        Blocks until cancel() is called or timeout expires.

        Args:
            timeout: Maximum seconds to wait. None means wait forever.

        Returns:
            True if cancelled, False if timeout expired.
        """
        return self._event.wait(timeout=timeout)

    def raise_if_cancelled(self) -> None:
        """Raise CancelledException if cancelled.

        Convenience method for checking cancellation at safe points.

        Raises:
            CancelledException: If cancel() has been called.
        """
        if self._cancelled:
            raise CancelledException()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback to be invoked when cancelled.

        If already cancelled, callback is invoked immediately.

        Args:
            callback: Function to call when cancellation is requested.

        Returns:
            A function that unregisters the callback. Safe to call more
            than once.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)

        # Already cancelled, invoke immediately
        try:
            callback()
        except Exception:
            pass
        return lambda: None

    def _remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass
