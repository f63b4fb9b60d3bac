"""Normalisation of provider stream framings into ordered text deltas.

Every upstream frames incremental output differently.  A provider declares
its framing once, in its ``Dialect``; ``create_normalizer()`` then selects
the matching normalizer from a fixed table:

  SSE        ``data: {...}`` lines, literal sentinel (``[DONE]``) at the end
  TYPED_SSE  same line framing, a ``type`` field picks delta vs terminal
  NDJSON     one JSON record per line, boolean ``done`` field at the end
  SIMULATED  no incremental transport; the finished text is replayed

Each normalizer is fed raw fragments as they arrive, calls the delta sink
once per text delta in transport order, and produces exactly one terminal
event (``Completion`` or ``StreamError``).
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import json
import logging
import re
from dataclasses import dataclass
from itertools import chain
from typing import Any, Callable, Iterator

from polyllm.errors import FragmentParseError, ProtocolError
from polyllm.types import Completion, StreamError, StreamEvent, TextDelta, Usage

_logger = logging.getLogger(__name__)

DeltaSink = Callable[[str], Any]

# Pacing between simulated deltas; non-normative.
SIMULATED_INTERVAL = 0.05  # seconds


class Framing(enum.Enum):
    """Transport framings a provider can declare."""

    SSE = "sse"
    TYPED_SSE = "typed_sse"
    NDJSON = "ndjson"
    SIMULATED = "simulated"


def _no_usage(record: dict[str, Any]) -> Usage | None:
    return None


def _never(record: dict[str, Any]) -> bool:
    return False


def _error_message(record: dict[str, Any]) -> str:
    return str(record.get("error") or record)


@dataclass(frozen=True)
class Dialect:
    """Capability declaration: how one provider frames its responses.

    ``text_of`` / ``usage_of`` / ``is_done`` read individual stream records.
    ``response_text`` / ``response_usage`` read a complete non-streaming
    payload; ``response_text`` may raise ``KeyError``, ``IndexError`` or
    ``TypeError`` on a malformed payload.
    Typed events whose discriminant is in ``error_types`` abort the stream
    with the message ``error_of`` reads from them.
    """

    framing: Framing
    response_text: Callable[[Any], str]
    response_usage: Callable[[Any], Usage | None] = _no_usage
    text_of: Callable[[dict[str, Any]], str] = lambda record: ""
    usage_of: Callable[[dict[str, Any]], Usage | None] = _no_usage
    is_done: Callable[[dict[str, Any]], bool] = _never
    sentinel: str | None = None
    type_field: str = "type"
    delta_types: frozenset[str] = frozenset()
    terminal_types: frozenset[str] = frozenset()
    error_types: frozenset[str] = frozenset()
    error_of: Callable[[dict[str, Any]], str] = _error_message

    @property
    def streams(self) -> bool:
        """Whether the upstream has a real incremental transport."""
        return self.framing is not Framing.SIMULATED

    def complete(self, payload: Any) -> Completion:
        """Turn a non-streaming payload into a ``Completion``."""
        try:
            text = self.response_text(payload)
            usage = self.response_usage(payload)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProtocolError(
                f"Unexpected response shape: missing {e!s}"
            ) from e
        if not isinstance(text, str):
            raise ProtocolError(
                f"Unexpected response shape: text is {type(text).__name__}"
            )
        return Completion(full_text=text, usage=usage, raw=payload)


# ---------------------------------------------------------------------------
# Line framing
# ---------------------------------------------------------------------------

class LineBuffer:
    """Reassemble newline-delimited lines from arbitrary network fragments.

    Bytes are decoded incrementally so a multi-byte character split across
    two fragments is held back until it is complete.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, fragment: bytes | str) -> Iterator[str]:
        """Yield every line completed by *fragment* (without terminator)."""
        if isinstance(fragment, bytes):
            fragment = self._decoder.decode(fragment)
        self._pending += fragment
        while True:
            idx = self._pending.find("\n")
            if idx < 0:
                break
            line = self._pending[:idx]
            self._pending = self._pending[idx + 1 :]
            yield line.rstrip("\r")

    def flush(self) -> Iterator[str]:
        """Yield whatever is left once the stream has ended."""
        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending, ""
        if rest.strip():
            yield rest.rstrip("\r")


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

class _LineNormalizer:
    """Shared state machine for the line-framed variants.

    Subclasses implement ``_handle_line()`` which either returns ``None``
    (keep going) or ``True`` once the terminal marker has been seen.
    """

    def __init__(self, dialect: Dialect, on_delta: DeltaSink | None = None) -> None:
        self.dialect = dialect
        self._on_delta = on_delta
        self._lines = LineBuffer()
        self._parts: list[str] = []
        self._usage: Usage | None = None
        self._raw: Any = None
        self._terminal: StreamEvent | None = None
        self.skipped_fragments = 0

    # -- public ---------------------------------------------------------

    @property
    def text(self) -> str:
        """Text accumulated so far."""
        return "".join(self._parts)

    @property
    def done(self) -> bool:
        return self._terminal is not None

    def feed(self, fragment: bytes | str) -> list[TextDelta]:
        """Consume one raw fragment; returns the deltas it produced."""
        if self._terminal is not None:
            return []
        return self._consume(self._lines.feed(fragment))

    def finish(self, raw: Any = None) -> StreamEvent:
        """End of transport: return the single terminal event."""
        if self._terminal is None:
            # A trailing blank line closes any event still being assembled.
            self._consume(chain(self._lines.flush(), ("",)))
        if self._terminal is None:
            self._terminal = StreamError(
                ProtocolError("Stream ended without a terminal event")
            )
        elif raw is not None and isinstance(self._terminal, Completion):
            self._terminal = Completion(self.text, self._usage, raw)
        return self._terminal

    def fail(self, cause: Exception) -> StreamEvent:
        """Transport failed mid-stream."""
        if self._terminal is None:
            self._terminal = StreamError(cause)
        return self._terminal

    # -- internals ------------------------------------------------------

    def _consume(self, lines: Iterator[str]) -> list[TextDelta]:
        deltas: list[TextDelta] = []
        for line in lines:
            try:
                finished = self._handle_line(line, deltas)
            except FragmentParseError as e:
                self.skipped_fragments += 1
                _logger.debug("Skipping malformed stream fragment: %s", e)
                continue
            if finished:
                self._complete()
            if self._terminal is not None:
                break
        return deltas

    def _complete(self) -> None:
        if self.skipped_fragments:
            _logger.warning(
                "Stream completed with %d malformed fragment(s) skipped",
                self.skipped_fragments,
            )
        self._terminal = Completion(self.text, self._usage, self._raw)

    def _decode(self, data: str) -> dict[str, Any]:
        try:
            record = json.loads(data)
        except json.JSONDecodeError as e:
            raise FragmentParseError(f"invalid JSON ({e.msg})", data) from e
        if not isinstance(record, dict):
            raise FragmentParseError("record is not an object", data)
        self._raw = record
        return record

    def _absorb(self, record: dict[str, Any], deltas: list[TextDelta]) -> None:
        """Pick text and usage out of one decoded record."""
        try:
            text = self.dialect.text_of(record)
            usage = self.dialect.usage_of(record)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise FragmentParseError(f"unexpected record shape ({e!s})") from e
        if usage is not None:
            self._usage = usage if self._usage is None else self._usage.merge(usage)
        if text:
            self._emit(text, deltas)

    def _emit(self, text: str, deltas: list[TextDelta]) -> None:
        self._parts.append(text)
        deltas.append(TextDelta(text))
        if self._on_delta is not None:
            self._on_delta(text)

    def _handle_line(self, line: str, deltas: list[TextDelta]) -> bool | None:
        raise NotImplementedError


def _sse_data(line: str) -> str | None:
    """Payload of an SSE ``data:`` line, or None for any other line."""
    if not line.startswith("data:"):
        return None
    data = line[5:]
    if data.startswith(" "):
        data = data[1:]
    return data


class _SSEEventNormalizer(_LineNormalizer):
    """Assembles ``data:`` lines into events at each blank line.

    The data lines of one event are joined with ``\\n``; comments and
    other fields are ignored.  Subclasses implement ``_handle_event()``.
    """

    def __init__(self, dialect: Dialect, on_delta: DeltaSink | None = None) -> None:
        super().__init__(dialect, on_delta)
        self._data: list[str] = []

    def _handle_line(self, line: str, deltas: list[TextDelta]) -> bool | None:
        if line:
            data = _sse_data(line)
            if data is not None:
                self._data.append(data)
            return None
        if not self._data:
            return None
        data, self._data = "\n".join(self._data).strip(), []
        if not data:
            return None
        if self.dialect.sentinel is not None and data == self.dialect.sentinel:
            return True
        return self._handle_event(self._decode(data), deltas)

    def _handle_event(self, record: dict[str, Any], deltas: list[TextDelta]) -> bool | None:
        raise NotImplementedError


class SSENormalizer(_SSEEventNormalizer):
    """``data:`` events terminated by a literal sentinel or a done record."""

    def _handle_event(self, record: dict[str, Any], deltas: list[TextDelta]) -> bool | None:
        self._absorb(record, deltas)
        return self.dialect.is_done(record)


class TypedSSENormalizer(_SSEEventNormalizer):
    """``data:`` events whose records carry an event discriminant."""

    def _handle_event(self, record: dict[str, Any], deltas: list[TextDelta]) -> bool | None:
        kind = record.get(self.dialect.type_field)
        if kind in self.dialect.delta_types:
            self._absorb(record, deltas)
            return None
        if kind in self.dialect.error_types:
            self._terminal = StreamError(
                ProtocolError(f"Upstream {kind} event: {self.dialect.error_of(record)}")
            )
            return None
        try:
            usage = self.dialect.usage_of(record)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise FragmentParseError(f"unexpected record shape ({e!s})") from e
        if usage is not None:
            self._usage = usage if self._usage is None else self._usage.merge(usage)
        return kind in self.dialect.terminal_types


class NDJSONNormalizer(_LineNormalizer):
    """One JSON record per line; the record's done flag ends the stream."""

    def _handle_line(self, line: str, deltas: list[TextDelta]) -> bool | None:
        if not line.strip():
            return None
        record = self._decode(line)
        self._absorb(record, deltas)
        return self.dialect.is_done(record)


_NORMALIZERS: dict[Framing, type[_LineNormalizer]] = {
    Framing.SSE: SSENormalizer,
    Framing.TYPED_SSE: TypedSSENormalizer,
    Framing.NDJSON: NDJSONNormalizer,
}


def create_normalizer(
    dialect: Dialect, on_delta: DeltaSink | None = None,
) -> _LineNormalizer:
    """Return a fresh normalizer for *dialect*'s framing."""
    try:
        cls = _NORMALIZERS[dialect.framing]
    except KeyError:
        raise ValueError(
            f"{dialect.framing.value} framing has no incremental normalizer; "
            "use simulate_stream()"
        ) from None
    return cls(dialect, on_delta)


# ---------------------------------------------------------------------------
# Simulated streaming
# ---------------------------------------------------------------------------

# A word plus its trailing whitespace, or leading whitespace on its own.
_SEGMENT_RE = re.compile(r"\S+\s*|\s+")


def segment_text(text: str) -> list[str]:
    """Split *text* on whitespace boundaries without dropping characters."""
    return _SEGMENT_RE.findall(text)


async def simulate_stream(
    completion: Completion,
    on_delta: DeltaSink,
    interval: float = SIMULATED_INTERVAL,
) -> Completion:
    """Replay a finished response through *on_delta*, one word at a time."""
    segments = segment_text(completion.full_text)
    for i, segment in enumerate(segments):
        if i:
            await asyncio.sleep(interval)
        on_delta(segment)
    return completion
