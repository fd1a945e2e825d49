"""Reassembly of tool calls streamed in fragments.

Two independent mechanisms share one per-request ToolCallAssembler:

Indexed fragments (chat-completions ``delta.tool_calls``):
    Fragments accumulate per ``index``. As soon as a buffer has a name and
    its arguments parse as a JSON object, the call is emitted and the index
    is marked completed; later fragments for it are ignored. A strict flush
    (finish_reason) raises on buffers that never became valid, a lenient
    flush ([DONE] or end of stream) drops them.

Inline markers (tool calls embedded in plain text):
    ``<|tool_call_begin|>name[:index]<|tool_call_argument_begin|>{json}<|tool_call_end|>``
    parsed by a two-state machine (SCANNING / COLLECTING_ARGS) with a
    carry-over buffer for markers split across chunks. Calls with an index
    dedup on ``name:index``; calls without one dedup on
    ``name:<canonical arguments>``.
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ...trace import provider_trace
from ..types import FunctionCall, Part
from .errors import InvalidToolArgumentsError
from .events import ToolCallComplete, ToolCallFragmentDelta

logger = logging.getLogger(__name__)

TOOL_CALL_BEGIN = "<|tool_call_begin|>"
TOOL_CALL_ARGUMENT_BEGIN = "<|tool_call_argument_begin|>"
TOOL_CALL_END = "<|tool_call_end|>"

UNKNOWN_TOOL = "unknown_tool"

_SECTION_TOKEN_RE = re.compile(r"<\|[a-zA-Z0-9_-]+_section_(?:begin|end)\|>")
_TOOL_CALL_TOKEN_RE = re.compile(r"<\|tool_call_(?:argument_)?(?:begin|end)\|>")
_HEADER_RE = re.compile(r"^([A-Za-z0-9_\-.]+)(?::(\d+))?")

# Signature: (prefix) -> id unique within one response
IdGenerator = Callable[[str], str]


def random_id(prefix: str) -> str:
    """Default id generator: ``<prefix>_<8 hex chars>``."""
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def parse_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse ``text`` if it is a JSON object, else return None."""
    if not text or "{" not in text:
        return None
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def strip_control_tokens(text: str) -> str:
    """Remove section and tool-call control tokens from visible text."""
    return _TOOL_CALL_TOKEN_RE.sub("", _SECTION_TOKEN_RE.sub("", text))


def _partial_suffix_length(data: str, marker: str) -> int:
    """Length of the longest tail of ``data`` that is a strict prefix of ``marker``."""
    for k in range(min(len(marker) - 1, len(data)), 0, -1):
        if data.endswith(marker[:k]):
            return k
    return 0


def parse_header(header: str) -> Tuple[Optional[str], Optional[int]]:
    """Parse an inline call header ``name`` or ``name:index``."""
    match = _HEADER_RE.match(header.strip())
    if not match:
        return None, None
    index = int(match.group(2)) if match.group(2) else None
    return match.group(1), index


class InlineState(str, Enum):
    SCANNING = "scanning"
    COLLECTING_ARGS = "collecting_args"


@dataclass
class ToolCallFragment:
    """Accumulated state of one indexed tool call."""
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass
class InlineCall:
    """The inline call currently being collected."""
    name: Optional[str]
    index: Optional[int] = None
    arguments: str = ""
    emitted: bool = False


class ToolCallAssembler:
    """Request-scoped tool-call reassembly state.

    Every ``add_*``/``feed_*``/``flush*`` method returns the canonical parts
    it produced, in order. Never share an instance between requests.

    Args:
        id_generator: Produces synthetic call ids (``call`` prefix for
            indexed calls without an upstream id, ``tct`` for inline calls).
    """

    def __init__(self, id_generator: IdGenerator = random_id):
        self._id_generator = id_generator
        self.buffers: Dict[int, ToolCallFragment] = {}
        self.completed_indices: Set[int] = set()
        self.state = InlineState.SCANNING
        self.carry = ""
        self.active: Optional[InlineCall] = None
        self._emitted_keys: Set[str] = set()
        self._emitted_inline_ids: Set[str] = set()
        self._emitted_call_ids: Set[str] = set()

    # ==================== Indexed Fragments ====================

    def add_fragment(self, delta: ToolCallFragmentDelta) -> List[Part]:
        """Accumulate one indexed fragment, emitting the call once valid."""
        if delta.index in self.completed_indices:
            return []
        buf = self.buffers.get(delta.index)
        if buf is None:
            buf = self.buffers[delta.index] = ToolCallFragment(index=delta.index)
        if delta.id:
            buf.id = delta.id
        if delta.name:
            buf.name = delta.name
        if delta.args_chunk:
            buf.arguments += delta.args_chunk

        if not buf.name:
            return []
        args = parse_json_object(buf.arguments)
        if args is None:
            return []
        return [self._complete_indexed(buf, buf.name, args)]

    def flush_indexed(self, strict: bool) -> List[Part]:
        """Emit or discard every open indexed buffer.

        Raises:
            InvalidToolArgumentsError: In strict mode, for the first buffer
                whose arguments are not a JSON object.
        """
        parts: List[Part] = []
        for index in sorted(self.buffers):
            buf = self.buffers[index]
            args = parse_json_object(buf.arguments)
            if args is None:
                if strict:
                    logger.error("Invalid JSON for tool call %s (index %d): %r",
                                 buf.name, index, buf.arguments[:200])
                    raise InvalidToolArgumentsError(index, buf.name, buf.arguments)
                logger.debug("Dropping incomplete tool call at index %d", index)
                del self.buffers[index]
                continue
            parts.append(self._complete_indexed(buf, buf.name or UNKNOWN_TOOL, args))
        return parts

    def _complete_indexed(self, buf: ToolCallFragment, name: str, args: Dict[str, Any]) -> Part:
        call_id = buf.id or self._id_generator("call")
        self._emitted_call_ids.add(call_id)
        del self.buffers[buf.index]
        self.completed_indices.add(buf.index)
        return self._emit(FunctionCall(id=call_id, name=name, args=args))

    # ==================== Complete Calls ====================

    def add_complete(self, event: ToolCallComplete) -> List[Part]:
        """Emit a call that arrived fully formed, once per call id."""
        if event.id in self._emitted_call_ids:
            return []
        self._emitted_call_ids.add(event.id)
        return [self._emit(FunctionCall(id=event.id, name=event.name, args=dict(event.arguments)))]

    # ==================== Inline Markers ====================

    def feed_text(self, text: str) -> List[Part]:
        """Run a text delta through the inline parser.

        Returns:
            Visible text parts (control tokens stripped) and inline tool
            calls, in stream order.
        """
        parts: List[Part] = []
        visible: List[str] = []
        data = self.carry + text
        self.carry = ""

        while data:
            if self.state == InlineState.SCANNING:
                begin = data.find(TOOL_CALL_BEGIN)
                if begin == -1:
                    hold = _partial_suffix_length(data, TOOL_CALL_BEGIN)
                    visible.append(data[:len(data) - hold])
                    self.carry = data[len(data) - hold:]
                    break

                visible.append(data[:begin])
                rest = data[begin + len(TOOL_CALL_BEGIN):]
                arg = rest.find(TOOL_CALL_ARGUMENT_BEGIN)
                end = rest.find(TOOL_CALL_END)
                if arg != -1 and (end == -1 or arg < end):
                    delimiter, marker = arg, TOOL_CALL_ARGUMENT_BEGIN
                elif end != -1:
                    delimiter, marker = end, TOOL_CALL_END
                else:
                    # Header incomplete; keep the begin marker with it
                    self.carry = TOOL_CALL_BEGIN + rest
                    break

                self._flush_visible(visible, parts)
                name, index = parse_header(rest[:delimiter])
                call = InlineCall(name=name, index=index)
                data = rest[delimiter + len(marker):]
                if marker == TOOL_CALL_END:
                    parts.extend(self._emit_inline(call, "{}"))
                else:
                    self.active = call
                    self.state = InlineState.COLLECTING_ARGS
                continue

            end = data.find(TOOL_CALL_END)
            if end == -1:
                hold = _partial_suffix_length(data, TOOL_CALL_END)
                self.active.arguments += data[:len(data) - hold]
                self.carry = data[len(data) - hold:]
                if not self.active.emitted:
                    parts.extend(self._emit_inline(self.active, self.active.arguments))
                break

            self.active.arguments += data[:end]
            data = data[end + len(TOOL_CALL_END):]
            if not self.active.emitted:
                parts.extend(self._emit_inline(self.active, self.active.arguments))
            self.active = None
            self.state = InlineState.SCANNING

        self._flush_visible(visible, parts)
        return parts

    def flush_inline(self) -> List[Part]:
        """End-of-stream flush of the inline parser.

        An open call is emitted if its arguments are valid; held-back text
        that is not part of a call is released as visible text.
        """
        parts: List[Part] = []
        if self.active is not None:
            if not self.active.emitted:
                parts.extend(self._emit_inline(self.active, self.active.arguments))
            self.active = None
            self.state = InlineState.SCANNING
        elif self.carry and not self.carry.startswith(TOOL_CALL_BEGIN):
            text = strip_control_tokens(self.carry)
            if text:
                parts.append(Part.from_text(text))
        self.carry = ""
        return parts

    def flush(self, strict: bool = False) -> List[Part]:
        """Flush indexed buffers, then (lenient only) the inline parser."""
        parts = self.flush_indexed(strict)
        if not strict:
            parts.extend(self.flush_inline())
        return parts

    def _flush_visible(self, visible: List[str], parts: List[Part]) -> None:
        text = strip_control_tokens("".join(visible))
        visible.clear()
        if text:
            parts.append(Part.from_text(text))

    def _emit_inline(self, call: InlineCall, arguments: str) -> List[Part]:
        args = parse_json_object(arguments)
        if args is None:
            return []
        name = call.name or UNKNOWN_TOOL
        key = f"{name}:{canonical_json(args)}"
        if call.index is not None:
            identity = f"{name}:{call.index}"
            if identity in self._emitted_inline_ids:
                return []
            self._emitted_inline_ids.add(identity)
        elif key in self._emitted_keys:
            return []
        self._emitted_keys.add(key)
        call.emitted = True
        return [self._emit(FunctionCall(id=self._id_generator("tct"), name=name, args=args))]

    def _emit(self, call: FunctionCall) -> Part:
        logger.debug("Emitting tool call %s (%s)", call.name, call.id)
        provider_trace("litellm", f"TOOL_CALL id={call.id} name={call.name} keys={sorted(call.args)}")
        return Part.from_function_call(call)
