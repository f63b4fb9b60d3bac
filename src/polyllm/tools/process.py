"""Lifecycle of auxiliary tool-server processes.

A model handle can attach tool servers (e.g. MCP servers started from a
command line).  They are spawned on attach and always stopped on close.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Sequence

_logger = logging.getLogger(__name__)

# Seconds to wait after SIGTERM before escalating to SIGKILL.
_STOP_TIMEOUT = 5.0


class ToolServer:
    """One auxiliary process.

    Only its lifetime is managed here; its standard streams go to
    ``/dev/null``.
    """

    def __init__(self, command: str | Sequence[str]) -> None:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ValueError("Tool server command is empty")
        self.argv = argv
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._proc

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        if self._proc is not None:
            return
        self._proc = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,  # keep it out of our signal group
        )
        _logger.info("Started tool server %s (pid %d)", self.argv[0], self._proc.pid)

    async def stop(self, timeout: float = _STOP_TIMEOUT) -> None:
        """Terminate the process, killing it if it does not exit in time."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return  # already dead
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            _logger.warning(
                "Tool server %s ignored SIGTERM for %.1fs, killing",
                self.argv[0], timeout,
            )
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()


class ToolServerPool:
    """Tool servers attached to one model handle."""

    def __init__(self) -> None:
        self._servers: list[ToolServer] = []

    def __len__(self) -> int:
        return len(self._servers)

    @property
    def servers(self) -> list[ToolServer]:
        return list(self._servers)

    async def attach(self, command: str | Sequence[str]) -> ToolServer:
        server = ToolServer(command)
        await server.start()
        self._servers.append(server)
        return server

    async def close(self) -> None:
        """Stop every attached server, even if stopping one of them fails."""
        servers, self._servers = self._servers, []
        for server in servers:
            try:
                await server.stop()
            except OSError as e:
                _logger.warning("Failed to stop tool server %s: %s", server.argv[0], e)

    async def __aenter__(self) -> ToolServerPool:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
