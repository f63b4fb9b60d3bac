"""Exception hierarchy for polyllm."""

from __future__ import annotations


class PolyLLMError(Exception):
    """Base class for every error raised by polyllm."""


class TransportError(PolyLLMError):
    """Network or HTTP-level failure talking to the upstream."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(PolyLLMError):
    """The upstream answered, but not in the expected shape."""


class FragmentParseError(PolyLLMError):
    """A single streaming fragment could not be decoded.

    Always recovered inside the stream normalizers.
    """

    def __init__(self, message: str, fragment: str = "") -> None:
        super().__init__(message)
        self.fragment = fragment


class RetryExhausted(PolyLLMError):
    """The retry budget was spent; wraps the final failure."""

    def __init__(
        self,
        retries: int,
        cause: BaseException,
        context: str | None = None,
    ) -> None:
        ctx = f" ({context})" if context else ""
        super().__init__(f"Failed after {retries} retries{ctx}: {cause}")
        self.retries = retries
        self.context = context
        self.cause = cause
