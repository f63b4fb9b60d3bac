"""Shared data types for polyllm."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, Mapping, Union


# ---------------------------------------------------------------------------
# Request types
# ---------------------------------------------------------------------------

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    """A single role-tagged message."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


# camelCase spellings accepted by ``ChatOptions.from_dict``
_OPTION_ALIASES = {
    "maxTokens": "max_tokens",
    "topP": "top_p",
    "topK": "top_k",
    "retryInterval": "retry_interval",
    "retryBackoff": "retry_backoff",
}


@dataclass(frozen=True)
class ChatOptions:
    """Per-call options.

    Sampling controls are passed through to the provider, ``system`` is
    prepended as a system message and the ``retry*`` fields override the
    default retry policy.  ``extra`` holds arbitrary keys that are merged
    into the provider payload unexamined.
    """

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    system: str | None = None
    retries: int | None = None
    retry_interval: float | None = None  # seconds
    retry_backoff: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> ChatOptions:
        """Build options from a plain mapping; unknown keys go to ``extra``."""
        if not raw:
            return cls()
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs: dict[str, Any] = {}
        extra: dict[str, Any] = dict(raw.get("extra") or {})
        for key, value in raw.items():
            if key == "extra":
                continue
            name = _OPTION_ALIASES.get(key, key)
            if name in known:
                kwargs[name] = value
            else:
                extra[key] = value
        return cls(extra=extra, **kwargs)

    def merged_over(self, defaults: ChatOptions | None) -> ChatOptions:
        """Overlay these options on *defaults*, field by field."""
        if defaults is None:
            return self
        changes: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            if getattr(self, f.name) is None:
                changes[f.name] = getattr(defaults, f.name)
        changes["extra"] = {**defaults.extra, **self.extra}
        return replace(self, **changes)


@dataclass(frozen=True)
class ChatRequest:
    """Everything one invocation sends upstream."""

    messages: tuple[ChatMessage, ...]
    options: ChatOptions = field(default_factory=ChatOptions)

    @classmethod
    def from_text(cls, text: str, options: ChatOptions) -> ChatRequest:
        messages = [ChatMessage("user", text)]
        if options.system:
            messages.insert(0, ChatMessage("system", options.system))
        return cls(messages=tuple(messages), options=options)


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Usage:
    """Token accounting reported by the upstream."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, input_tokens: int | None, output_tokens: int | None,
           total_tokens: int | None = None) -> Usage:
        inp = input_tokens or 0
        out = output_tokens or 0
        return cls(inp, out, total_tokens or inp + out)

    def merge(self, other: Usage | None) -> Usage:
        """Combine with a later, possibly partial, report."""
        if other is None:
            return self
        inp = other.input_tokens or self.input_tokens
        out = other.output_tokens or self.output_tokens
        return Usage(inp, out, max(other.total_tokens, inp + out))


@dataclass
class CodeBlock:
    """A fenced code block found in a response."""

    language: str
    code: str


@dataclass
class ParsedResponse:
    """Response text split into prose, code blocks and reasoning."""

    content: str = ""
    code_blocks: list[CodeBlock] = field(default_factory=list)
    thinking: str | None = None


@dataclass
class ChatResult:
    """Unified result of one ``chat()`` call."""

    raw: Any
    parsed: ParsedResponse
    usage: Usage | None = None

    @property
    def content(self) -> str:
        return self.parsed.content


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextDelta:
    """One incremental fragment of generated text."""

    text: str


@dataclass(frozen=True)
class Completion:
    """Terminal event of a successful stream."""

    full_text: str
    usage: Usage | None = None
    raw: Any = None


@dataclass(frozen=True)
class StreamError:
    """Terminal event of a failed stream."""

    cause: Exception


StreamEvent = Union[TextDelta, Completion, StreamError]
