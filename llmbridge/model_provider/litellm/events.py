"""Upstream events decoded from one gateway stream frame.

A frame maps to zero or more of these before tool-call reassembly and the
repetition guard turn them into canonical output parts.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


@dataclass(frozen=True)
class TextDelta:
    """A piece of streamed text (may still contain inline tool-call markers)."""
    text: str


@dataclass(frozen=True)
class ToolCallFragmentDelta:
    """One fragment of an indexed (chat-completions style) tool call."""
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    args_chunk: str = ""


@dataclass(frozen=True)
class ToolCallComplete:
    """A fully formed tool call delivered in a single frame."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinishSignal:
    """The upstream declared the response finished.

    Attributes:
        reason: Upstream finish reason ("stop", "tool_calls", "completed", ...).
    """
    reason: str

    @property
    def is_strict(self) -> bool:
        """Whether buffered tool calls must be valid at this point."""
        return self.reason in ("stop", "tool_calls")


@dataclass(frozen=True)
class DoneSentinel:
    """The ``data: [DONE]`` line."""
    pass


UpstreamEvent = Union[TextDelta, ToolCallFragmentDelta, ToolCallComplete, FinishSignal, DoneSentinel]
