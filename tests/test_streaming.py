"""Tests for stream normalisation across transport framings."""

from __future__ import annotations

import json
import logging

import pytest

from polyllm.errors import ProtocolError, TransportError
from polyllm.llm import dialects
from polyllm.llm.streaming import (
    Framing,
    LineBuffer,
    NDJSONNormalizer,
    SSENormalizer,
    TypedSSENormalizer,
    create_normalizer,
    segment_text,
    simulate_stream,
)
from polyllm.types import Completion, StreamError, TextDelta, Usage


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sse(record: dict | str) -> str:
    data = record if isinstance(record, str) else json.dumps(record)
    return f"data: {data}\n\n"


def _openai_chunk(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}, "index": 0}]}


def _fragments(raw: bytes, size: int) -> list[bytes]:
    """Split *raw* into fixed-size pieces, ignoring any framing."""
    return [raw[i : i + size] for i in range(0, len(raw), size)]


class Sink:
    def __init__(self) -> None:
        self.deltas: list[str] = []

    def __call__(self, text: str) -> None:
        self.deltas.append(text)


# ---------------------------------------------------------------------------
# Line buffering
# ---------------------------------------------------------------------------

class TestLineBuffer:
    def test_partial_lines_are_held(self):
        buf = LineBuffer()
        assert list(buf.feed(b"data: {\"a\"")) == []
        assert list(buf.feed(b": 1}\ndata: x")) == ['data: {"a": 1}']
        assert list(buf.flush()) == ["data: x"]

    def test_crlf_stripped(self):
        buf = LineBuffer()
        assert list(buf.feed("one\r\ntwo\r\n")) == ["one", "two"]

    def test_split_multibyte_character(self):
        raw = "héllo\n".encode()
        buf = LineBuffer()
        lines = list(buf.feed(raw[:2])) + list(buf.feed(raw[2:]))
        assert lines == ["héllo"]

    def test_flush_ignores_blank_remainder(self):
        buf = LineBuffer()
        list(buf.feed("a\n  "))
        assert list(buf.flush()) == []


# ---------------------------------------------------------------------------
# SSE with sentinel
# ---------------------------------------------------------------------------

class TestSSENormalizer:
    def test_deltas_and_completion(self):
        sink = Sink()
        norm = create_normalizer(dialects.OPENAI, sink)
        assert isinstance(norm, SSENormalizer)
        norm.feed(_sse(_openai_chunk("Hel")) + _sse(_openai_chunk("lo")))
        norm.feed(_sse("[DONE]"))
        event = norm.finish()
        assert sink.deltas == ["Hel", "lo"]
        assert event == Completion("Hello", None, _openai_chunk("lo"))

    def test_fragmentation_is_buffered(self):
        text = "The quick brown fox jumps over the lazy dog"
        body = "".join(_sse(_openai_chunk(w + " ")) for w in text.split())
        body += _sse("[DONE]")
        for size in (1, 3, 7, 64):
            sink = Sink()
            norm = create_normalizer(dialects.OPENAI, sink)
            for piece in _fragments(body.encode(), size):
                norm.feed(piece)
            event = norm.finish()
            assert isinstance(event, Completion)
            assert "".join(sink.deltas) == text + " "
            assert event.full_text == text + " "

    def test_malformed_fragment_skipped(self, caplog):
        sink = Sink()
        norm = create_normalizer(dialects.OPENAI, sink)
        with caplog.at_level(logging.DEBUG, logger="polyllm.llm.streaming"):
            norm.feed(_sse(_openai_chunk("a")))
            norm.feed('data: {"choices": [\n\n')
            norm.feed(_sse(_openai_chunk("b")))
            norm.feed(_sse("[DONE]"))
        event = norm.finish()
        assert event.full_text == "ab"
        assert norm.skipped_fragments == 1
        assert any("malformed" in r.getMessage() for r in caplog.records)

    def test_non_object_record_skipped(self):
        norm = create_normalizer(dialects.OPENAI)
        norm.feed(_sse("[1, 2]") + _sse(_openai_chunk("x")) + _sse("[DONE]"))
        assert norm.finish().full_text == "x"
        assert norm.skipped_fragments == 1

    def test_comments_and_other_fields_ignored(self):
        norm = create_normalizer(dialects.OPENAI)
        norm.feed(": keep-alive\n\nevent: ping\nid: 3\n")
        norm.feed(_sse(_openai_chunk("ok")) + _sse("[DONE]"))
        event = norm.finish()
        assert event.full_text == "ok"
        assert norm.skipped_fragments == 0

    def test_multiline_data_joined_into_one_event(self):
        sink = Sink()
        norm = create_normalizer(dialects.OPENAI, sink)
        norm.feed('data: {"choices": [{"delta":\n')
        norm.feed('data: {"content": "x"}}]}\n\n')
        norm.feed(_sse("[DONE]"))
        event = norm.finish()
        assert sink.deltas == ["x"]
        assert event.full_text == "x"
        assert norm.skipped_fragments == 0

    def test_event_without_trailing_blank_line_is_dispatched(self):
        norm = create_normalizer(dialects.GOOGLE)
        norm.feed('data: {"candidates": [{"content": {"parts": [{"text": "end"}]},'
                  ' "finishReason": "STOP"}]}')
        event = norm.finish()
        assert isinstance(event, Completion)
        assert event.full_text == "end"

    def test_usage_carried_when_present(self):
        norm = create_normalizer(dialects.OPENAI)
        norm.feed(_sse(_openai_chunk("hi")))
        norm.feed(_sse({
            "choices": [],
            "usage": {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4},
        }))
        norm.feed(_sse("[DONE]"))
        assert norm.finish().usage == Usage(3, 1, 4)

    def test_usage_absent_is_none(self):
        norm = create_normalizer(dialects.OPENAI)
        norm.feed(_sse(_openai_chunk("hi")) + _sse("[DONE]"))
        event = norm.finish()
        assert isinstance(event, Completion)
        assert event.usage is None

    def test_nothing_delivered_after_terminal(self):
        sink = Sink()
        norm = create_normalizer(dialects.OPENAI, sink)
        norm.feed(_sse(_openai_chunk("a")) + _sse("[DONE]") + _sse(_openai_chunk("late")))
        assert norm.done
        assert norm.feed(_sse(_openai_chunk("later"))) == []
        assert norm.finish().full_text == "a"
        assert sink.deltas == ["a"]

    def test_missing_sentinel_is_protocol_error(self):
        norm = create_normalizer(dialects.OPENAI)
        norm.feed(_sse(_openai_chunk("partial")))
        event = norm.finish()
        assert isinstance(event, StreamError)
        assert isinstance(event.cause, ProtocolError)
        assert norm.text == "partial"

    def test_transport_failure_becomes_stream_error(self):
        norm = create_normalizer(dialects.OPENAI)
        norm.feed(_sse(_openai_chunk("partial")))
        cause = TransportError("reset")
        assert norm.fail(cause) == StreamError(cause)

    def test_failure_after_terminal_keeps_completion(self):
        norm = create_normalizer(dialects.OPENAI)
        norm.feed(_sse(_openai_chunk("done")) + _sse("[DONE]"))
        assert isinstance(norm.fail(TransportError("reset")), Completion)

    def test_done_predicate_without_sentinel(self):
        def chunk(text: str, finish: str | None = None) -> dict:
            cand: dict = {"content": {"parts": [{"text": text}]}}
            if finish:
                cand["finishReason"] = finish
            return {"candidates": [cand]}

        sink = Sink()
        norm = create_normalizer(dialects.GOOGLE, sink)
        norm.feed(_sse(chunk("Bon")))
        norm.feed(_sse({
            **chunk("jour", "STOP"),
            "usageMetadata": {
                "promptTokenCount": 2, "candidatesTokenCount": 2, "totalTokenCount": 4,
            },
        }))
        event = norm.finish()
        assert sink.deltas == ["Bon", "jour"]
        assert event.full_text == "Bonjour"
        assert event.usage == Usage(2, 2, 4)


# ---------------------------------------------------------------------------
# Typed events
# ---------------------------------------------------------------------------

class TestTypedSSENormalizer:
    def _anthropic_body(self) -> str:
        events = [
            {"type": "message_start", "message": {"usage": {"input_tokens": 12, "output_tokens": 1}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "ping"},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi "}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "there"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
        ]
        return "".join(f"event: {e['type']}\n" + _sse(e) for e in events)

    def test_anthropic_stream(self):
        sink = Sink()
        norm = create_normalizer(dialects.ANTHROPIC, sink)
        assert isinstance(norm, TypedSSENormalizer)
        for piece in _fragments(self._anthropic_body().encode(), 17):
            norm.feed(piece)
        event = norm.finish()
        assert sink.deltas == ["Hi ", "there"]
        assert event.full_text == "Hi there"
        assert event.usage == Usage(12, 7, 19)
        assert event.raw == {"type": "message_stop"}

    def test_error_event_ends_stream(self):
        sink = Sink()
        norm = create_normalizer(dialects.ANTHROPIC, sink)
        norm.feed(
            _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
            + _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
            + _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "!"}})
        )
        assert norm.done
        event = norm.finish()
        assert isinstance(event, StreamError)
        assert isinstance(event.cause, ProtocolError)
        assert "Overloaded" in str(event.cause)
        assert sink.deltas == ["Hi"]

    def test_error_event_without_message(self):
        norm = create_normalizer(dialects.ANTHROPIC)
        norm.feed(_sse({"type": "error", "error": "boom"}))
        assert "boom" in str(norm.finish().cause)

    def test_cohere_stream(self):
        body = (
            _sse({"type": "message-start", "id": "x"})
            + _sse({"type": "content-delta", "delta": {"message": {"content": {"text": "Sa"}}}})
            + _sse({"type": "content-delta", "delta": {"message": {"content": {"text": "lut"}}}})
            + _sse({
                "type": "message-end",
                "delta": {"usage": {"billed_units": {"input_tokens": 5, "output_tokens": 2}}},
            })
        )
        sink = Sink()
        norm = create_normalizer(dialects.COHERE, sink)
        norm.feed(body)
        event = norm.finish()
        assert sink.deltas == ["Sa", "lut"]
        assert event.full_text == "Salut"
        assert event.usage == Usage(5, 2, 7)

    def test_cohere_sentinel_also_terminates(self):
        norm = create_normalizer(dialects.COHERE)
        norm.feed(
            _sse({"type": "content-delta", "delta": {"message": {"content": {"text": "x"}}}})
            + _sse("[DONE]")
        )
        event = norm.finish()
        assert isinstance(event, Completion)
        assert event.usage is None


# ---------------------------------------------------------------------------
# NDJSON
# ---------------------------------------------------------------------------

class TestNDJSONNormalizer:
    def _body(self) -> bytes:
        records = [
            {"model": "m", "message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"model": "m", "message": {"role": "assistant", "content": "lo"}, "done": False},
            {"model": "m", "message": {"role": "assistant", "content": ""}, "done": True,
             "prompt_eval_count": 15, "eval_count": 25},
        ]
        return "".join(json.dumps(r) + "\n" for r in records).encode()

    def test_done_record_terminates(self):
        sink = Sink()
        norm = create_normalizer(dialects.OLLAMA, sink)
        assert isinstance(norm, NDJSONNormalizer)
        for piece in _fragments(self._body(), 10):
            norm.feed(piece)
        event = norm.finish()
        assert sink.deltas == ["Hel", "lo"]
        assert event.full_text == "Hello"
        assert event.usage == Usage(15, 25, 40)

    def test_final_record_without_newline(self):
        norm = create_normalizer(dialects.OLLAMA)
        norm.feed(self._body().rstrip(b"\n"))
        event = norm.finish()
        assert isinstance(event, Completion)
        assert event.full_text == "Hello"

    def test_garbage_line_skipped(self):
        norm = create_normalizer(dialects.OLLAMA)
        norm.feed(b"not json\n" + self._body())
        assert norm.finish().full_text == "Hello"
        assert norm.skipped_fragments == 1


# ---------------------------------------------------------------------------
# Simulated
# ---------------------------------------------------------------------------

class TestSimulated:
    def test_no_line_normalizer(self):
        with pytest.raises(ValueError):
            create_normalizer(dialects.HUGGINGFACE)
        assert dialects.HUGGINGFACE.framing is Framing.SIMULATED
        assert not dialects.HUGGINGFACE.streams

    def test_segments_preserve_every_character(self):
        text = "  Hello,  world!\nSecond\tline "
        segments = segment_text(text)
        assert "".join(segments) == text
        assert segments[:2] == ["  ", "Hello,  "]

    async def test_replay_in_order(self):
        sink = Sink()
        completion = Completion("one two three", None, {"generated_text": "one two three"})
        result = await simulate_stream(completion, sink, interval=0)
        assert result is completion
        assert sink.deltas == ["one ", "two ", "three"]

    async def test_single_word_emits_one_delta(self):
        sink = Sink()
        await simulate_stream(Completion("word"), sink, interval=0)
        assert sink.deltas == ["word"]
