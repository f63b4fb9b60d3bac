"""Transport abstraction and its ``httpx`` implementation.

The request engine only needs ``Transport.send()``: with a sink it pushes raw
body fragments into it as they arrive, without one it resolves with the
decoded JSON payload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

import httpx

from polyllm.errors import ProtocolError, TransportError
from polyllm.types import ChatMessage, ChatOptions

from .streaming import Dialect

_logger = logging.getLogger(__name__)

FragmentSink = Callable[[bytes], Any]
PayloadBuilder = Callable[
    [str, Sequence[ChatMessage], ChatOptions, bool], dict[str, Any]
]


class Transport(Protocol):
    """What the dispatcher needs from an upstream connection."""

    name: str
    dialect: Dialect

    async def send(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        sink: FragmentSink | None = None,
    ) -> Any:
        ...

    async def close(self) -> None:
        ...


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of one upstream service.

    ``path(model, stream)`` gives the endpoint relative to ``base_url``,
    ``headers(api_key)`` the auth headers, and ``payload(model, messages,
    options, stream)`` the JSON request body.
    """

    kind: str
    base_url: str
    dialect: Dialect
    path: Callable[[str, bool], str]
    headers: Callable[[str], dict[str, str]]
    payload: PayloadBuilder


class HttpTransport:
    """``Transport`` over HTTP for any ``ProviderSpec``."""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str = "",
        base_url: str | None = None,
        timeout: float = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.spec = spec
        self.name = spec.kind
        self.dialect = spec.dialect
        self._base_url = (base_url or spec.base_url).rstrip("/")
        self._headers = {"Content-Type": "application/json", **spec.headers(api_key)}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=30, read=300),
        )

    def url_for(self, model: str, stream: bool) -> str:
        return self._base_url + self.spec.path(model, stream)

    async def send(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        sink: FragmentSink | None = None,
    ) -> Any:
        stream = sink is not None
        payload = self.spec.payload(model, messages, options, stream)
        url = self.url_for(model, stream)
        _logger.debug("POST %s (stream=%s)", url, stream)

        if sink is None:
            try:
                resp = await self._client.post(url, json=payload, headers=self._headers)
            except httpx.HTTPError as e:
                raise TransportError(f"{self.name} request failed: {e}") from e
            self._raise_for_status(resp.status_code, resp.text)
            try:
                return resp.json()
            except ValueError as e:
                raise ProtocolError(
                    f"{self.name} returned invalid JSON response"
                ) from e

        try:
            async with self._client.stream(
                "POST", url, json=payload, headers=self._headers,
            ) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode(errors="replace")
                    self._raise_for_status(resp.status_code, body)
                async for chunk in resp.aiter_bytes():
                    sink(chunk)
        except httpx.HTTPError as e:
            raise TransportError(f"{self.name} stream failed: {e}") from e
        return None

    def _raise_for_status(self, status_code: int, body: str) -> None:
        if status_code < 400:
            return
        raise TransportError(
            f"{self.name} API returned {status_code}: {body.strip()[:200]}",
            status_code=status_code,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()
