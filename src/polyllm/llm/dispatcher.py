"""Per-model request handle.

``ModelHandle.chat()`` composes the request engine: it builds the message
sequence, derives a ``RetryPolicy``, runs each attempt under
``execute_with_retry()``, normalises the transport output into deltas and
finally structures the accumulated text with ``parse_response()``.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Mapping, Sequence

from polyllm.tools.process import ToolServer, ToolServerPool
from polyllm.types import (
    ChatOptions,
    ChatRequest,
    ChatResult,
    Completion,
    StreamError,
)

from .response_parser import parse_response
from .retry import RetryPolicy, execute_with_retry
from .streaming import SIMULATED_INTERVAL, create_normalizer, simulate_stream
from .transport import Transport

_logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], Any]


def _is_coroutine_callable(func: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


class ModelHandle:
    """Chat with one model of one provider.

    Parameters
    ----------
    transport:
        Connection to the upstream; its ``dialect`` declares the framing.
    model:
        Upstream model identifier.
    defaults:
        Options applied under every call's own options.
    owns_transport:
        Close *transport* when the handle is closed.
    """

    def __init__(
        self,
        transport: Transport,
        model: str,
        *,
        defaults: ChatOptions | None = None,
        simulate_interval: float = SIMULATED_INTERVAL,
        owns_transport: bool = False,
    ) -> None:
        self._transport = transport
        self.model = model
        self._defaults = defaults
        self._simulate_interval = simulate_interval
        self._owns_transport = owns_transport
        self._tools = ToolServerPool()

    @property
    def context(self) -> str:
        """Label used in retry diagnostics and errors."""
        return f"{self._transport.name}:{self.model}"

    @property
    def tool_servers(self) -> list[ToolServer]:
        return self._tools.servers

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def chat(
        self,
        text: str,
        options: ChatOptions | Mapping[str, Any] | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> ChatResult:
        """Send *text* and return the structured result.

        If *on_delta* is given the streaming path is used and it is called
        with every text delta before this coroutine returns.  A retried
        attempt streams again from the start; deltas of failed attempts are
        not retracted.

        *on_delta* is called synchronously; a coroutine function raises
        ``TypeError`` because its deltas could never be awaited in order.
        """
        if on_delta is not None and _is_coroutine_callable(on_delta):
            raise TypeError(
                "on_delta must be a plain callable, not a coroutine function"
            )
        if not isinstance(options, ChatOptions):
            options = ChatOptions.from_dict(options)
        options = options.merged_over(self._defaults)
        request = ChatRequest.from_text(text, options)
        policy = RetryPolicy.from_options(options)

        async def _attempt() -> Completion:
            return await self._run_attempt(request, on_delta)

        completion = await execute_with_retry(_attempt, policy, self.context)
        return ChatResult(
            raw=completion.raw,
            parsed=parse_response(completion.full_text),
            usage=completion.usage,
        )

    async def _run_attempt(
        self,
        request: ChatRequest,
        on_delta: DeltaCallback | None,
    ) -> Completion:
        dialect = self._transport.dialect
        if on_delta is None or not dialect.streams:
            payload = await self._transport.send(
                self.model, request.messages, request.options,
            )
            completion = dialect.complete(payload)
            if on_delta is not None:
                await simulate_stream(completion, on_delta, self._simulate_interval)
            return completion

        normalizer = create_normalizer(dialect, on_delta)
        try:
            raw = await self._transport.send(
                self.model, request.messages, request.options,
                sink=normalizer.feed,
            )
        except Exception as e:
            event = normalizer.fail(e)
        else:
            event = normalizer.finish(raw)
        if isinstance(event, StreamError):
            raise event.cause
        return event

    # ------------------------------------------------------------------
    # Tool servers
    # ------------------------------------------------------------------

    async def attach_tool_server(self, command: str | Sequence[str]) -> ToolServer:
        """Spawn an auxiliary tool server that lives until ``close()``."""
        return await self._tools.attach(command)

    async def close(self) -> None:
        try:
            await self._tools.close()
        finally:
            if self._owns_transport:
                await self._transport.close()

    async def __aenter__(self) -> ModelHandle:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
