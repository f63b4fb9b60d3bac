"""Response dialects of the supported upstream services.

Each ``Dialect`` declares the stream framing a service uses and how to pick
text and usage out of its records and complete payloads.
"""

from __future__ import annotations

from typing import Any

from polyllm.types import Usage

from .streaming import Dialect, Framing


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------

def _openai_usage(data: dict[str, Any]) -> Usage | None:
    usage = data.get("usage")
    if not usage:
        return None
    return Usage.of(
        usage.get("prompt_tokens"),
        usage.get("completion_tokens"),
        usage.get("total_tokens"),
    )


def _openai_delta(record: dict[str, Any]) -> str:
    choices = record.get("choices") or [{}]
    return (choices[0].get("delta") or {}).get("content") or ""


OPENAI = Dialect(
    framing=Framing.SSE,
    response_text=lambda p: p["choices"][0]["message"]["content"] or "",
    response_usage=_openai_usage,
    text_of=_openai_delta,
    usage_of=_openai_usage,
    sentinel="[DONE]",
)


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------

def _anthropic_text(payload: dict[str, Any]) -> str:
    return "".join(
        block["text"] for block in payload["content"]
        if block.get("type") == "text"
    )


def _anthropic_usage(usage: dict[str, Any] | None) -> Usage | None:
    if not usage:
        return None
    return Usage.of(usage.get("input_tokens"), usage.get("output_tokens"))


def _anthropic_stream_usage(record: dict[str, Any]) -> Usage | None:
    # input tokens arrive with message_start, output tokens with message_delta
    if record.get("type") == "message_start":
        return _anthropic_usage((record.get("message") or {}).get("usage"))
    return _anthropic_usage(record.get("usage"))


def _anthropic_error(record: dict[str, Any]) -> str:
    error = record.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("type") or str(error)
    return str(error or record)


ANTHROPIC = Dialect(
    framing=Framing.TYPED_SSE,
    response_text=_anthropic_text,
    response_usage=lambda p: _anthropic_usage(p.get("usage")),
    text_of=lambda r: (r.get("delta") or {}).get("text") or "",
    usage_of=_anthropic_stream_usage,
    delta_types=frozenset({"content_block_delta"}),
    terminal_types=frozenset({"message_stop"}),
    error_types=frozenset({"error"}),
    error_of=_anthropic_error,
)


# ---------------------------------------------------------------------------
# Cohere chat (v2)
# ---------------------------------------------------------------------------

def _cohere_billed(usage: dict[str, Any] | None) -> Usage | None:
    billed = (usage or {}).get("billed_units")
    if not billed:
        return None
    return Usage.of(billed.get("input_tokens"), billed.get("output_tokens"))


def _cohere_text(payload: dict[str, Any]) -> str:
    return "".join(
        part.get("text", "") for part in payload["message"]["content"]
    )


def _cohere_delta(record: dict[str, Any]) -> str:
    content = ((record.get("delta") or {}).get("message") or {}).get("content")
    return (content or {}).get("text") or ""


COHERE = Dialect(
    framing=Framing.TYPED_SSE,
    response_text=_cohere_text,
    response_usage=lambda p: _cohere_billed(p.get("usage")),
    text_of=_cohere_delta,
    usage_of=lambda r: _cohere_billed((r.get("delta") or {}).get("usage")),
    sentinel="[DONE]",
    delta_types=frozenset({"content-delta"}),
    terminal_types=frozenset({"message-end"}),
)


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------

def _gemini_candidate(data: dict[str, Any]) -> dict[str, Any]:
    return (data.get("candidates") or [{}])[0]


def _gemini_parts_text(candidate: dict[str, Any]) -> str:
    parts = (candidate.get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts)


def _gemini_usage(data: dict[str, Any]) -> Usage | None:
    meta = data.get("usageMetadata")
    if not meta:
        return None
    return Usage.of(
        meta.get("promptTokenCount"),
        meta.get("candidatesTokenCount"),
        meta.get("totalTokenCount"),
    )


GOOGLE = Dialect(
    framing=Framing.SSE,
    response_text=lambda p: _gemini_parts_text(p["candidates"][0]),
    response_usage=_gemini_usage,
    text_of=lambda r: _gemini_parts_text(_gemini_candidate(r)),
    usage_of=_gemini_usage,
    is_done=lambda r: bool(_gemini_candidate(r).get("finishReason")),
)


# ---------------------------------------------------------------------------
# Ollama native API
# ---------------------------------------------------------------------------

def _ollama_usage(data: dict[str, Any]) -> Usage | None:
    if "prompt_eval_count" not in data and "eval_count" not in data:
        return None
    return Usage.of(data.get("prompt_eval_count"), data.get("eval_count"))


OLLAMA = Dialect(
    framing=Framing.NDJSON,
    response_text=lambda p: p["message"]["content"],
    response_usage=_ollama_usage,
    text_of=lambda r: (r.get("message") or {}).get("content") or "",
    usage_of=_ollama_usage,
    is_done=lambda r: r.get("done") is True,
)


# ---------------------------------------------------------------------------
# Hugging Face inference (no incremental transport)
# ---------------------------------------------------------------------------

def _hf_text(payload: Any) -> str:
    if isinstance(payload, list):
        payload = payload[0]
    return payload["generated_text"]


HUGGINGFACE = Dialect(
    framing=Framing.SIMULATED,
    response_text=_hf_text,
)
