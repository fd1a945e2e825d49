"""Tests for frame normalization and the streaming pipeline."""

import itertools
import json

import pytest

from llmbridge.model_provider.litellm.errors import InvalidToolArgumentsError
from llmbridge.model_provider.litellm.events import (
    FinishSignal,
    TextDelta,
    ToolCallComplete,
    ToolCallFragmentDelta,
)
from llmbridge.model_provider.litellm.normalizer import (
    REPETITION_THRESHOLD,
    RepetitionGuard,
    StreamContext,
    decode_frame,
    normalize,
)
from llmbridge.model_provider.litellm.tool_calls import (
    TOOL_CALL_ARGUMENT_BEGIN,
    TOOL_CALL_BEGIN,
    TOOL_CALL_END,
)
from llmbridge.model_provider.types import CancelledException, CancelToken


def sequential_ids():
    counter = itertools.count(1)
    return lambda prefix: f"{prefix}_{next(counter)}"


def sse(*frames, done=True) -> bytes:
    lines = [f"data: {json.dumps(f)}\n" for f in frames]
    if done:
        lines.append("data: [DONE]\n")
    return "".join(lines).encode("utf-8")


def chunk(content=None, tool_calls=None, finish_reason=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def run(raw, chunks=None, **kwargs):
    pieces = chunks if chunks is not None else [raw]
    return list(normalize(pieces, id_generator=sequential_ids(), **kwargs))


def summarize(parts):
    return [
        ("text", p.text) if p.text is not None
        else ("call", p.function_call.id, p.function_call.name, p.function_call.args)
        for p in parts
    ]


class TestDecodeFrame:
    """Tests for shape dispatch."""

    def test_chat_chunk_text(self):
        assert decode_frame(chunk(content="hi")) == [TextDelta("hi")]

    def test_chat_chunk_content_list(self):
        frame = {"choices": [{"delta": {"content": [{"type": "text", "text": "a"}, {"text": "b"}]}}]}
        assert decode_frame(frame) == [TextDelta("ab")]

    def test_chat_chunk_tool_fragments_and_finish(self):
        frame = chunk(tool_calls=[{"index": 1, "id": "c", "function": {"name": "x", "arguments": "{}"}}],
                      finish_reason="tool_calls")
        assert decode_frame(frame) == [
            ToolCallFragmentDelta(index=1, id="c", name="x", args_chunk="{}"),
            FinishSignal("tool_calls"),
        ]

    def test_missing_index_defaults_to_zero(self):
        frame = chunk(tool_calls=[{"function": {"arguments": "{"}}])
        assert decode_frame(frame)[0].index == 0

    def test_responses_text_delta(self):
        assert decode_frame({"type": "response.output_text.delta", "delta": "hey"}) == [TextDelta("hey")]
        assert decode_frame({"type": "response.output_text.delta", "chunk": "c"}) == [TextDelta("c")]

    def test_responses_function_call_done(self):
        frame = {"type": "response.output_item.done", "item": {
            "type": "function_call", "call_id": "fc_1", "name": "read", "arguments": '{"p": 1}'}}
        assert decode_frame(frame) == [ToolCallComplete(id="fc_1", name="read", arguments={"p": 1})]

    def test_responses_function_call_without_name(self):
        frame = {"type": "response.output_item.done", "item": {
            "type": "function_call", "call_id": "fc_1", "arguments": "{}"}}
        assert decode_frame(frame)[0].name == "unknown_tool"

    def test_responses_function_call_invalid_arguments(self):
        frame = {"type": "response.output_item.done", "item": {
            "type": "function_call", "call_id": "fc_1", "name": "read", "arguments": '{"p": '}}
        assert decode_frame(frame) == []

    def test_responses_completed(self):
        assert decode_frame({"type": "response.completed", "response": {}}) == [FinishSignal("completed")]

    def test_output_text_frame(self):
        frame = {"output": [{"content": [{"type": "output_text", "text": "done"}], "finish_reason": "stop"}]}
        assert decode_frame(frame) == [TextDelta("done"), FinishSignal("stop")]

    def test_top_level_text(self):
        assert decode_frame({"content": "raw"}) == [TextDelta("raw")]
        assert decode_frame({"text": "raw"}) == [TextDelta("raw")]

    def test_typed_frame_never_uses_top_level_text(self):
        assert decode_frame({"type": "response.output_text.done", "text": "full message"}) == []

    def test_unrecognized(self):
        assert decode_frame({"id": "x", "object": "chat.completion.chunk"}) == []


class TestRepetitionGuard:
    """Tests for the repeated-delta guard."""

    def test_short_runs_released_intact(self):
        guard = RepetitionGuard()
        out = []
        for text in ["a", "a", "a", "b"]:
            out.extend(guard.feed(text))
        assert out == ["a", "a", "a", "b"]

    def test_runaway_run_suppressed(self):
        guard = RepetitionGuard()
        out = []
        for _ in range(REPETITION_THRESHOLD + 5):
            out.extend(guard.feed("x"))
        out.extend(guard.feed("y"))
        out.extend(guard.release())
        assert out == ["x", "y"]

    def test_run_just_below_threshold(self):
        guard = RepetitionGuard()
        out = []
        for _ in range(REPETITION_THRESHOLD - 1):
            out.extend(guard.feed("x"))
        out.extend(guard.release())
        assert out == ["x"] * (REPETITION_THRESHOLD - 1)


class TestNormalizeScenarios:
    """End-to-end tests over raw SSE bytes."""

    def test_fragmented_tool_call_emitted_once(self):
        """Emitted after the second frame, not duplicated at finish."""
        frames = [
            chunk(tool_calls=[{"index": 0, "function": {"name": "x", "arguments": "{\"a\":"}}]),
            chunk(tool_calls=[{"index": 0, "function": {"arguments": "1}"}}]),
            chunk(finish_reason="tool_calls"),
        ]
        ctx = StreamContext.create(sequential_ids())
        per_frame = [[p for e in decode_frame(f) for p in ctx.handle(e)] for f in frames]

        assert per_frame[0] == []
        assert summarize(per_frame[1]) == [("call", "call_1", "x", {"a": 1})]
        assert per_frame[2] == []
        assert summarize(run(sse(*frames))) == [("call", "call_1", "x", {"a": 1})]

    def test_repeated_deltas_suppressed_then_reset(self):
        frames = [chunk(content="x") for _ in range(21)] + [chunk(content="y")]
        assert summarize(run(sse(*frames))) == [("text", "x"), ("text", "y")]

    def test_strict_flush_raises(self):
        raw = sse(
            chunk(tool_calls=[{"index": 0, "function": {"name": "x", "arguments": "{\"a\":"}}]),
            chunk(finish_reason="stop"),
        )
        with pytest.raises(InvalidToolArgumentsError):
            run(raw)

    def test_done_flush_is_lenient(self):
        raw = sse(
            chunk(content="hi"),
            chunk(tool_calls=[{"index": 0, "function": {"name": "x", "arguments": "{\"a\":"}}]),
        )
        assert summarize(run(raw)) == [("text", "hi")]

    def test_other_finish_reasons_do_not_flush(self):
        raw = sse(
            chunk(tool_calls=[{"index": 0, "function": {"name": "x", "arguments": "{\"a\":"}}]),
            chunk(finish_reason="length"),
        )
        assert run(raw) == []

    def test_stream_without_done(self):
        raw = sse(chunk(content="a"), chunk(content="b"), done=False)
        assert summarize(run(raw)) == [("text", "a"), ("text", "b")]

    def test_frames_after_done_ignored(self):
        raw = sse(chunk(content="a")) + sse(chunk(content="late"), done=False)
        assert summarize(run(raw)) == [("text", "a")]

    def test_malformed_frame_skipped(self):
        raw = b"data: {oops\n" + sse(chunk(content="ok"))
        assert summarize(run(raw)) == [("text", "ok")]

    @pytest.mark.parametrize("bad_frame", [
        {"choices": [{"delta": "oops"}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": "bad"}]}}]},
        {"choices": [{"delta": {"tool_calls": "bad"}}]},
        {"output": [{"content": "bad"}]},
    ])
    def test_wrong_typed_members_skipped(self, bad_frame):
        raw = sse(bad_frame, chunk(content="ok"))
        assert summarize(run(raw)) == [("text", "ok")]

    def test_inline_tool_call_in_content(self):
        text = f"Let me check.{TOOL_CALL_BEGIN}read_file:0{TOOL_CALL_ARGUMENT_BEGIN}{{\"path\": \"a\"}}{TOOL_CALL_END}"
        raw = sse(chunk(content=text[:20]), chunk(content=text[20:]))
        assert summarize(run(raw)) == [
            ("text", "Let me check."),
            ("call", "tct_1", "read_file", {"path": "a"}),
        ]

    def test_inline_tool_call_in_responses_delta(self):
        text = f"{TOOL_CALL_BEGIN}ls{TOOL_CALL_END}"
        raw = sse({"type": "response.output_text.delta", "delta": text})
        assert summarize(run(raw)) == [("call", "tct_1", "ls", {})]

    def test_responses_stream(self):
        raw = sse(
            {"type": "response.created", "response": {"id": "r"}},
            {"type": "response.output_text.delta", "delta": "Hello"},
            {"type": "response.output_item.done", "item": {
                "type": "function_call", "call_id": "fc_1", "name": "read", "arguments": "{}"}},
            {"type": "response.completed", "response": {"id": "r"}},
        )
        assert summarize(run(raw)) == [("text", "Hello"), ("call", "fc_1", "read", {})]

    def test_text_held_by_guard_released_before_call(self):
        raw = sse(
            chunk(content="."), chunk(content="."),
            chunk(tool_calls=[{"index": 0, "id": "c", "function": {"name": "x", "arguments": "{}"}}]),
        )
        assert summarize(run(raw)) == [("text", "."), ("text", "."), ("call", "c", "x", {})]


class TestNormalizeProperties:
    """Property-style checks over one representative stream."""

    RAW = sse(
        chunk(content="Héllo "),
        chunk(content=f"wörld {TOOL_CALL_BEGIN}find{TOOL_CALL_ARGUMENT_BEGIN}{{\"q\": \"ü\"}}"),
        chunk(content=f"{TOOL_CALL_END} more"),
        chunk(tool_calls=[{"index": 0, "id": "c0", "function": {"name": "x", "arguments": "{\"a\""}}]),
        chunk(tool_calls=[{"index": 0, "function": {"arguments": ": [1, 2]}"}}]),
        chunk(tool_calls=[{"index": 0, "function": {"arguments": "ignored"}}]),
        chunk(finish_reason="tool_calls"),
    )

    def test_every_split_point_gives_same_parts(self):
        expected = summarize(run(self.RAW))
        for split in range(1, len(self.RAW)):
            assert summarize(run(None, chunks=[self.RAW[:split], self.RAW[split:]])) == expected

    def test_no_duplicate_identities(self):
        calls = [p.function_call for p in run(self.RAW) if p.function_call is not None]
        assert len(calls) == 2
        assert len({(c.name, json.dumps(c.args, sort_keys=True)) for c in calls}) == len(calls)

    def test_fresh_state_per_call(self):
        assert summarize(run(self.RAW)) == summarize(run(self.RAW))


class TestNormalizeCancellation:
    """Tests for cancellation mid-stream."""

    def test_cancel_between_chunks(self):
        token = CancelToken()
        parts = normalize([sse(chunk(content="a"), done=False), sse(chunk(content="b"))], cancel_token=token)
        assert next(parts).text == "a"
        token.cancel()
        with pytest.raises(CancelledException):
            next(parts)
