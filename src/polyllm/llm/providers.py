"""Provider catalogue: request construction per upstream service.

Usage::

    provider = create_provider("anthropic", api_key)
    async with provider.create_model("claude-3-5-haiku-20241022") as llm:
        result = await llm.chat("Hi", {"temperature": 0.2}, on_delta=print)
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from polyllm.types import ChatMessage, ChatOptions

from . import dialects
from .dispatcher import ModelHandle
from .streaming import SIMULATED_INTERVAL
from .transport import HttpTransport, ProviderSpec

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

def _bearer(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


def _anthropic_headers(api_key: str) -> dict[str, str]:
    return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}


def _google_headers(api_key: str) -> dict[str, str]:
    return {"x-goog-api-key": api_key}


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def _split_system(
    messages: Sequence[ChatMessage],
) -> tuple[str | None, list[ChatMessage]]:
    system = next((m.content for m in messages if m.role == "system"), None)
    return system, [m for m in messages if m.role != "system"]


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def _openai_payload(
    model: str, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "messages": [m.to_dict() for m in messages],
        **_drop_none({
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "top_p": options.top_p,
        }),
        "stream": stream,
    }
    payload.update(options.extra)
    return payload


def _anthropic_payload(
    model: str, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool,
) -> dict[str, Any]:
    system, rest = _split_system(messages)
    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": options.max_tokens or 4096,
        "messages": [m.to_dict() for m in rest],
        **_drop_none({
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k,
            "system": system,
        }),
        "stream": stream,
    }
    payload.update(options.extra)
    return payload


def _cohere_payload(
    model: str, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "messages": [m.to_dict() for m in messages],
        **_drop_none({
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "p": options.top_p,
            "k": options.top_k,
        }),
        "stream": stream,
    }
    payload.update(options.extra)
    return payload


def _google_payload(
    model: str, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool,
) -> dict[str, Any]:
    system, rest = _split_system(messages)
    payload: dict[str, Any] = {
        "contents": [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in rest
        ],
    }
    if system:
        payload["systemInstruction"] = {"parts": [{"text": system}]}
    config = _drop_none({
        "temperature": options.temperature,
        "maxOutputTokens": options.max_tokens,
        "topP": options.top_p,
        "topK": options.top_k,
    })
    if config:
        payload["generationConfig"] = config
    payload.update(options.extra)
    return payload


def _ollama_payload(
    model: str, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "messages": [m.to_dict() for m in messages],
        "stream": stream,
        "options": _drop_none({
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k,
            "num_predict": options.max_tokens,
        }),
    }
    payload.update(options.extra)
    return payload


def _flatten_prompt(messages: Sequence[ChatMessage]) -> str:
    """Render a conversation as a plain text-generation prompt."""
    system, rest = _split_system(messages)
    prompt = f"System: {system}\n\n" if system else ""
    for m in rest:
        speaker = "Assistant" if m.role == "assistant" else "User"
        prompt += f"{speaker}: {m.content}\n\n"
    return prompt + "Assistant:"


def _huggingface_payload(
    model: str, messages: Sequence[ChatMessage], options: ChatOptions, stream: bool,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "inputs": _flatten_prompt(messages),
        "parameters": {
            "return_full_text": False,
            **_drop_none({
                "max_new_tokens": options.max_tokens,
                "temperature": options.temperature,
                "top_p": options.top_p,
                "top_k": options.top_k,
            }),
        },
    }
    payload.update(options.extra)
    return payload


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

def _openai_compatible(kind: str, base_url: str) -> ProviderSpec:
    return ProviderSpec(
        kind=kind,
        base_url=base_url,
        dialect=dialects.OPENAI,
        path=lambda model, stream: "/chat/completions",
        headers=_bearer,
        payload=_openai_payload,
    )


def _google_path(model: str, stream: bool) -> str:
    if stream:
        return f"/models/{model}:streamGenerateContent?alt=sse"
    return f"/models/{model}:generateContent"


PROVIDERS: dict[str, ProviderSpec] = {
    spec.kind: spec
    for spec in (
        _openai_compatible("openai", "https://api.openai.com/v1"),
        _openai_compatible("openrouter", "https://openrouter.ai/api/v1"),
        _openai_compatible("groq", "https://api.groq.com/openai/v1"),
        _openai_compatible("cerebras", "https://api.cerebras.ai/v1"),
        _openai_compatible("together", "https://api.together.xyz/v1"),
        _openai_compatible("fireworks", "https://api.fireworks.ai/inference/v1"),
        _openai_compatible("perplexity", "https://api.perplexity.ai"),
        _openai_compatible("deepinfra", "https://api.deepinfra.com/v1/openai"),
        _openai_compatible("mistral", "https://api.mistral.ai/v1"),
        ProviderSpec(
            kind="anthropic",
            base_url="https://api.anthropic.com/v1",
            dialect=dialects.ANTHROPIC,
            path=lambda model, stream: "/messages",
            headers=_anthropic_headers,
            payload=_anthropic_payload,
        ),
        ProviderSpec(
            kind="cohere",
            base_url="https://api.cohere.com/v2",
            dialect=dialects.COHERE,
            path=lambda model, stream: "/chat",
            headers=_bearer,
            payload=_cohere_payload,
        ),
        ProviderSpec(
            kind="google",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            dialect=dialects.GOOGLE,
            path=_google_path,
            headers=_google_headers,
            payload=_google_payload,
        ),
        ProviderSpec(
            kind="ollama",
            base_url="http://localhost:11434",
            dialect=dialects.OLLAMA,
            path=lambda model, stream: "/api/chat",
            headers=_bearer,
            payload=_ollama_payload,
        ),
        ProviderSpec(
            kind="huggingface",
            base_url="https://api-inference.huggingface.co",
            dialect=dialects.HUGGINGFACE,
            path=lambda model, stream: f"/models/{model}",
            headers=_bearer,
            payload=_huggingface_payload,
        ),
    )
}


class Provider:
    """Credentials plus a shared HTTP transport for one upstream service."""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str = "",
        base_url: str | None = None,
        *,
        timeout: float = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.spec = spec
        self.transport = HttpTransport(
            spec, api_key=api_key, base_url=base_url, timeout=timeout, client=client,
        )

    @property
    def kind(self) -> str:
        return self.spec.kind

    def create_model(
        self,
        model_id: str,
        *,
        defaults: ChatOptions | None = None,
        simulate_interval: float = SIMULATED_INTERVAL,
        owns_transport: bool = False,
    ) -> ModelHandle:
        return ModelHandle(
            self.transport,
            model_id,
            defaults=defaults,
            simulate_interval=simulate_interval,
            owns_transport=owns_transport,
        )

    async def close(self) -> None:
        await self.transport.close()


def create_provider(
    kind: str,
    api_key: str = "",
    base_url: str | None = None,
    **kwargs: Any,
) -> Provider:
    """Create a ``Provider`` for a catalogue entry such as ``"openai"``."""
    try:
        spec = PROVIDERS[kind]
    except KeyError:
        raise ValueError(
            f"Unsupported provider type: {kind} "
            f"(known: {', '.join(sorted(PROVIDERS))})"
        ) from None
    _logger.debug("Creating %s provider (base_url=%s)", kind, base_url or spec.base_url)
    return Provider(spec, api_key=api_key, base_url=base_url, **kwargs)
