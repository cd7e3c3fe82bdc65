"""Client facade binding a transport to an ``mcp.ClientSession``.

Transport-specific features are reached by capability narrowing, e.g.
``get_stderr(client)`` works only when the transport provides stderr.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import AsyncExitStack
from datetime import timedelta
from typing import Any

import mcp.types as types
from anyio.abc import ByteReceiveStream
from mcp import ClientSession
from mcp.server.fastmcp import FastMCP
from mcp.server.lowlevel import Server

from .errors import TransportStateError, UnsupportedCapabilityError
from .transport import InProcessTransport, StdioTransport, SupportsStderr, Transport

__all__ = [
    "Client",
    "get_stderr",
    "new_in_process_client",
    "new_stdio_client",
]

logger = logging.getLogger(__name__)


class Client:
    """MCP client over any transport.

    ``start()`` and ``close()`` must run in the same task, because the
    underlying session holds a task group.

    Example:
        async with Client(StdioTransport("my-server")) as client:
            tools = await client.list_tools()
    """

    def __init__(self, transport: Transport, *, read_timeout: float | None = None) -> None:
        self._transport = transport
        self._read_timeout = read_timeout
        self._exit_stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None
        self._initialize_result: types.InitializeResult | None = None
        self._closed = False

    @property
    def transport(self) -> Transport:
        return self._transport

    def get_transport(self) -> Transport:
        return self._transport

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            raise TransportStateError("Client is not started")
        return self._session

    @property
    def server_info(self) -> types.Implementation | None:
        """Server name and version, once initialized."""
        if self._initialize_result is None:
            return None
        return self._initialize_result.serverInfo

    async def start(self) -> None:
        """Start the transport (unless already started) and open the session."""
        if self._session is not None:
            raise TransportStateError("Client already started")

        if not self._transport.is_started:
            await self._transport.start()

        read_timeout = (
            timedelta(seconds=self._read_timeout) if self._read_timeout is not None else None
        )
        stack = AsyncExitStack()
        try:
            self._session = await stack.enter_async_context(
                ClientSession(
                    self._transport.read_stream,
                    self._transport.write_stream,
                    read_timeout_seconds=read_timeout,
                )
            )
        except BaseException:
            await stack.aclose()
            raise
        self._exit_stack = stack
        logger.debug(f"Client session opened over {type(self._transport).__name__}")

    async def initialize(self) -> types.InitializeResult:
        self._initialize_result = await self.session.initialize()
        return self._initialize_result

    async def list_tools(self) -> types.ListToolsResult:
        return await self.session.list_tools()

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> types.CallToolResult:
        return await self.session.call_tool(name, arguments)

    async def ping(self) -> types.EmptyResult:
        return await self.session.send_ping()

    async def close(self) -> None:
        """Close the session, then the transport.

        Transport errors (e.g. ``WaitError`` for a non-zero exit) propagate.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if self._exit_stack is not None:
                await self._exit_stack.aclose()
        finally:
            self._session = None
            self._exit_stack = None
            await self._transport.close()

    async def __aenter__(self) -> "Client":
        await self.start()
        try:
            await self.initialize()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


async def new_stdio_client(
    command: str,
    env: Sequence[str] | None = None,
    *args: str,
    read_timeout: float | None = None,
    **transport_kwargs: Any,
) -> Client:
    """Launch ``command`` and return a client bound to it.

    The transport is already started; call ``client.start()`` and
    ``client.initialize()`` (or use ``async with``) to open the session.

    Raises:
        LaunchError: If the subprocess could not be started
    """
    transport = StdioTransport(command, args, env, **transport_kwargs)
    await transport.start()
    return Client(transport, read_timeout=read_timeout)


def new_in_process_client(server: Server | FastMCP, **transport_kwargs: Any) -> Client:
    """Return a client bound to a server object in the same process."""
    return Client(InProcessTransport(server, **transport_kwargs))


def get_stderr(client: Client) -> ByteReceiveStream:
    """Return the server's stderr stream.

    Raises:
        UnsupportedCapabilityError: If the transport has no stderr
    """
    transport = client.transport
    if not isinstance(transport, SupportsStderr):
        raise UnsupportedCapabilityError("stderr", transport)
    return transport.stderr
