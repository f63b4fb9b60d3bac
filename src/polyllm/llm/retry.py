"""Bounded retry with deterministic exponential backoff.

Generalises the inline ``for attempt in range(_MAX_RETRIES)`` loops of the
HTTP client into one engine that any coroutine factory can run under.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from polyllm.errors import RetryExhausted
from polyllm.types import ChatOptions

_logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retry defaults
DEFAULT_RETRIES = 1
DEFAULT_RETRY_INTERVAL = 1.0  # seconds -- exponential: 1, 2, 4
DEFAULT_RETRY_BACKOFF = 2.0


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait in between."""

    max_retries: int = DEFAULT_RETRIES
    base_delay: float = DEFAULT_RETRY_INTERVAL
    backoff_multiplier: float = DEFAULT_RETRY_BACKOFF

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before *attempt* (1-based; the first waits 0)."""
        if attempt <= 1:
            return 0.0
        return self.base_delay * self.backoff_multiplier ** (attempt - 2)

    @classmethod
    def from_options(cls, options: ChatOptions | None) -> RetryPolicy:
        """Derive a policy, falling back to the defaults per field."""
        if options is None:
            return cls()
        return cls(
            max_retries=(
                options.retries if options.retries is not None else DEFAULT_RETRIES
            ),
            base_delay=(
                options.retry_interval
                if options.retry_interval is not None
                else DEFAULT_RETRY_INTERVAL
            ),
            backoff_multiplier=(
                options.retry_backoff
                if options.retry_backoff is not None
                else DEFAULT_RETRY_BACKOFF
            ),
        )


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    context: str | None = None,
) -> T:
    """Run *operation* until it succeeds or *policy* is exhausted.

    Attempts are strictly sequential.  On exhaustion a ``RetryExhausted``
    chained from the last failure is raised; its message reads
    ``Failed after {n} retries (context): cause``.
    """
    ctx = f" ({context})" if context else ""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if attempt >= policy.max_attempts:
                raise RetryExhausted(policy.max_retries, e, context) from e
            delay = policy.delay_before(attempt + 1)
            _logger.warning(
                "Retry %d/%d after %.3fs%s: %s",
                attempt, policy.max_retries, delay, ctx, e,
            )
            await asyncio.sleep(delay)
