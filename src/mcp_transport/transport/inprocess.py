"""In-process transport: a client bound directly to a server object.

No subprocess and no pipes. Messages travel as ``SessionMessage`` objects
over in-memory streams between the client session and ``Server.run`` running
in a background task. Used for embedding and for process-free tests.
"""

from __future__ import annotations

import asyncio
import logging

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server.fastmcp import FastMCP
from mcp.server.lowlevel import Server
from mcp.shared.message import SessionMessage

from ..errors import TransportStateError
from .base import Transport

__all__ = ["InProcessTransport"]

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 1.0


class InProcessTransport(Transport):
    """Transport to an MCP server living in the same event loop.

    Accepts a low-level ``Server`` or a ``FastMCP`` instance. This transport
    has no stderr capability.

    Attributes:
        shutdown_timeout: Seconds the server task gets to finish after the
            client stream closes before it is cancelled
    """

    def __init__(
        self,
        server: Server | FastMCP,
        *,
        raise_exceptions: bool = False,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        if isinstance(server, FastMCP):
            server = server._mcp_server
        self._server: Server = server
        self._raise_exceptions = raise_exceptions
        self.shutdown_timeout = shutdown_timeout

        self._server_read: MemoryObjectReceiveStream[SessionMessage | Exception] | None = None
        self._server_write: MemoryObjectSendStream[SessionMessage] | None = None
        self._server_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def server(self) -> Server:
        return self._server

    @property
    def is_started(self) -> bool:
        return self._server_task is not None

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Wire the streams and run the server in a background task."""
        if self._server_task is not None:
            raise TransportStateError("InProcessTransport already started")

        client_write, server_read = anyio.create_memory_object_stream[
            SessionMessage | Exception
        ](0)
        server_write, client_read = anyio.create_memory_object_stream[
            SessionMessage | Exception
        ](0)

        self._read_stream = client_read
        self._write_stream = client_write
        self._server_read = server_read
        self._server_write = server_write

        self._server_task = asyncio.create_task(
            self._run_server(server_read, server_write),
            name=f"inprocess-server-{self._server.name}",
        )
        logger.debug(f"In-process transport started for server {self._server.name!r}")

    async def _run_server(
        self,
        read_stream: MemoryObjectReceiveStream[SessionMessage | Exception],
        write_stream: MemoryObjectSendStream[SessionMessage],
    ) -> None:
        await self._server.run(
            read_stream,
            write_stream,
            self._server.create_initialization_options(),
            raise_exceptions=self._raise_exceptions,
        )

    async def close(self) -> None:
        """Stop the server task and release every stream. No-op when repeated."""
        if self._server_task is None or self._closed:
            return
        self._closed = True

        # End of input lets Server.run return on its own
        if self._write_stream is not None:
            await self._write_stream.aclose()

        task = self._server_task
        done, _ = await asyncio.wait({task}, timeout=self.shutdown_timeout)
        if not done:
            logger.debug("In-process server did not stop in time, cancelling")
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        elif not task.cancelled() and task.exception() is not None:
            logger.warning(f"In-process server stopped with error: {task.exception()!r}")

        for stream in (self._read_stream, self._server_read, self._server_write):
            if stream is not None:
                await stream.aclose()

        logger.debug(f"In-process transport closed for server {self._server.name!r}")
