"""Normalization of gateway stream frames into canonical output parts.

Frames arrive in one of several shapes. Each matcher in FRAME_MATCHERS is
tried in order and either returns the upstream events for the frame or None
when the shape does not apply:

1. event-typed frames (``{"type": "response.output_text.delta", ...}``)
2. chat-completions chunks (``{"choices": [{"delta": {...}}]}``)
3. Responses output frames (``{"output": [{"content": [...]}]}``)
4. bare text (``{"content": "..."}`` / ``{"text": "..."}``) without a type

Events then flow through the request's ToolCallAssembler and the
repetition guard, and come out as ``Part`` objects (text or function call).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from ...trace import provider_trace
from ..types import CancelToken, Part
from .events import (
    DoneSentinel,
    FinishSignal,
    TextDelta,
    ToolCallComplete,
    ToolCallFragmentDelta,
    UpstreamEvent,
)
from .sse import StreamDecoder, iter_frames
from .tool_calls import UNKNOWN_TOOL, IdGenerator, ToolCallAssembler, parse_json_object, random_id

logger = logging.getLogger(__name__)

# Consecutive identical text deltas treated as a runaway loop
REPETITION_THRESHOLD = 20

FrameMatcher = Callable[[Dict[str, Any]], Optional[List[UpstreamEvent]]]


# ==================== Frame Matchers ====================

def match_event_frame(frame: Dict[str, Any]) -> Optional[List[UpstreamEvent]]:
    """Responses API event-typed frames."""
    event_type = frame.get("type")
    if not isinstance(event_type, str):
        return None

    if event_type == "response.output_text.delta":
        for key in ("delta", "text", "chunk"):
            text = frame.get(key)
            if isinstance(text, str) and text:
                return [TextDelta(text)]
        return []

    if event_type == "response.output_item.done":
        item = frame.get("item")
        if not isinstance(item, dict) or item.get("type") != "function_call":
            return []
        call_id = item.get("call_id")
        args = parse_json_object(item.get("arguments"))
        if not call_id or args is None:
            logger.debug("Skipping incomplete function_call item: %r", item)
            return []
        return [ToolCallComplete(id=call_id, name=item.get("name") or UNKNOWN_TOOL, arguments=args)]

    if event_type == "response.completed":
        return [FinishSignal("completed")]

    return None


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            c["text"] for c in content
            if isinstance(c, dict) and isinstance(c.get("text"), str)
        )
    return ""


def match_choice_frame(frame: Dict[str, Any]) -> Optional[List[UpstreamEvent]]:
    """Chat-completions chunks: ``choices[0].delta`` plus ``finish_reason``."""
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = {}
    events: List[UpstreamEvent] = []

    text = _content_text(delta.get("content"))
    if text:
        events.append(TextDelta(text))

    tool_calls = delta.get("tool_calls")
    for tc in tool_calls if isinstance(tool_calls, list) else []:
        if not isinstance(tc, dict):
            continue
        index = tc.get("index")
        func = tc.get("function")
        if not isinstance(func, dict):
            func = {}
        arguments = func.get("arguments")
        events.append(ToolCallFragmentDelta(
            index=index if isinstance(index, int) else 0,
            id=tc.get("id") if isinstance(tc.get("id"), str) else None,
            name=func.get("name") if isinstance(func.get("name"), str) else None,
            args_chunk=arguments if isinstance(arguments, str) else "",
        ))

    finish_reason = choice.get("finish_reason")
    if finish_reason:
        events.append(FinishSignal(str(finish_reason)))
    return events


def match_output_frame(frame: Dict[str, Any]) -> Optional[List[UpstreamEvent]]:
    """Responses output frames: ``output[0].content[]`` with ``output_text``."""
    output = frame.get("output")
    if not isinstance(output, list) or not output or not isinstance(output[0], dict):
        return None
    first = output[0]
    content = first.get("content")
    if not isinstance(content, list):
        return None
    for item in content:
        if isinstance(item, dict) and item.get("type") == "output_text":
            events: List[UpstreamEvent] = []
            if isinstance(item.get("text"), str) and item["text"]:
                events.append(TextDelta(item["text"]))
            if first.get("finish_reason"):
                events.append(FinishSignal(str(first["finish_reason"])))
            return events
    return None


def match_top_level_text(frame: Dict[str, Any]) -> Optional[List[UpstreamEvent]]:
    """Bare ``content``/``text`` at the root of a frame without a type."""
    if "type" in frame:
        return None
    for key in ("content", "text"):
        text = frame.get(key)
        if isinstance(text, str) and text:
            return [TextDelta(text)]
    return None


FRAME_MATCHERS: List[FrameMatcher] = [
    match_event_frame,
    match_choice_frame,
    match_output_frame,
    match_top_level_text,
]


def decode_frame(frame: Dict[str, Any]) -> List[UpstreamEvent]:
    """Map one frame to upstream events using the first matching shape."""
    for matcher in FRAME_MATCHERS:
        events = matcher(frame)
        if events is not None:
            return events
    logger.debug("Unrecognized frame keys: %s", sorted(frame))
    return []


# ==================== Repetition Guard ====================

class RepetitionGuard:
    """Suppresses runs of identical consecutive text deltas.

    The first delta of a run is emitted at once. Repeats are held until
    the run breaks: a run shorter than the threshold is released intact,
    a run that reaches it is dropped along with the rest of the run.
    """

    def __init__(self, threshold: int = REPETITION_THRESHOLD):
        self.threshold = threshold
        self.last: Optional[str] = None
        self.run = 0
        self.held: List[str] = []
        self.suppressed = 0

    def feed(self, text: str) -> List[str]:
        if text == self.last:
            self.run += 1
            if self.run >= self.threshold:
                if self.run == self.threshold:
                    logger.warning("Suppressing repeated text delta (%d identical in a row)", self.run)
                self.suppressed += 1 + len(self.held)
                self.held = []
                return []
            self.held.append(text)
            return []
        released = self.release()
        self.last = text
        self.run = 1
        released.append(text)
        return released

    def release(self) -> List[str]:
        """Return held repeats of a run that stayed under the threshold."""
        held = self.held if self.run < self.threshold else []
        self.held = []
        return held

    def break_run(self) -> List[str]:
        """End the current run for non-text output."""
        released = self.release()
        self.last = None
        self.run = 0
        return released


# ==================== Stream Context ====================

@dataclass
class StreamContext:
    """Mutable state for one streamed response. Never reused."""
    assembler: ToolCallAssembler
    guard: RepetitionGuard = field(default_factory=RepetitionGuard)
    decoder: StreamDecoder = field(default_factory=StreamDecoder)
    text_parts: int = 0
    tool_calls: int = 0
    finish_reason: Optional[str] = None

    @classmethod
    def create(cls, id_generator: IdGenerator = random_id) -> 'StreamContext':
        return cls(assembler=ToolCallAssembler(id_generator))

    def handle(self, event: UpstreamEvent) -> List[Part]:
        """Apply one upstream event and return the parts to emit."""
        if isinstance(event, TextDelta):
            return self._guarded(self.assembler.feed_text(event.text))
        if isinstance(event, ToolCallFragmentDelta):
            return self._guarded(self.assembler.add_fragment(event))
        if isinstance(event, ToolCallComplete):
            return self._guarded(self.assembler.add_complete(event))
        if isinstance(event, FinishSignal):
            self.finish_reason = event.reason
            if event.is_strict:
                return self._guarded(self.assembler.flush_indexed(strict=True))
            if event.reason == "completed":
                return self._guarded(self.assembler.flush(strict=False))
            logger.info("Stream finished with reason %r", event.reason)
            return []
        if isinstance(event, DoneSentinel):
            return self.finish()
        return []

    def finish(self) -> List[Part]:
        """Lenient end-of-stream flush plus any held text."""
        parts = self._guarded(self.assembler.flush(strict=False))
        parts.extend(Part.from_text(t) for t in self.guard.release())
        return parts

    def _guarded(self, parts: Iterable[Part]) -> List[Part]:
        out: List[Part] = []
        for part in parts:
            if part.text is not None:
                out.extend(Part.from_text(t) for t in self.guard.feed(part.text))
            else:
                out.extend(Part.from_text(t) for t in self.guard.break_run())
                out.append(part)
        self.text_parts += sum(1 for p in out if p.text is not None)
        self.tool_calls += sum(1 for p in out if p.function_call is not None)
        return out


def normalize(
    chunks: Iterable[bytes],
    cancel_token: Optional[CancelToken] = None,
    id_generator: IdGenerator = random_id,
) -> Iterator[Part]:
    """Turn a streamed response body into canonical output parts.

    The returned iterator is lazy and single-use. It ends at ``[DONE]`` or
    at the end of ``chunks``, after a lenient flush of buffered tool calls.

    Args:
        chunks: Raw response body chunks.
        cancel_token: Checked between chunks.
        id_generator: Synthetic tool-call id source.

    Yields:
        Text and function-call parts in arrival order.

    Raises:
        InvalidToolArgumentsError: A finish_reason of "stop"/"tool_calls"
            arrived while a tool call's arguments were still invalid.
        CancelledException: The token was cancelled mid-stream.
    """
    ctx = StreamContext.create(id_generator)
    try:
        for frame in iter_frames(chunks, cancel_token, ctx.decoder):
            if isinstance(frame, DoneSentinel):
                break
            for event in decode_frame(frame):
                for part in ctx.handle(event):
                    yield part
        for part in ctx.finish():
            yield part
        provider_trace(
            "litellm",
            f"STREAM_END frames={ctx.decoder.frames} malformed={ctx.decoder.malformed} "
            f"text_parts={ctx.text_parts} tool_calls={ctx.tool_calls} "
            f"finish={ctx.finish_reason} suppressed={ctx.guard.suppressed}",
        )
    finally:
        ctx.assembler.buffers.clear()
        ctx.assembler.completed_indices.clear()
