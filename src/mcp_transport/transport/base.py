"""Transport interface shared by the stdio and in-process variants."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Protocol, runtime_checkable

from anyio.abc import ByteReceiveStream
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import SessionMessage

from ..errors import TransportStateError

__all__ = [
    "ReadStream",
    "WriteStream",
    "SupportsStderr",
    "Transport",
]

# Same stream types mcp.ClientSession consumes
ReadStream = MemoryObjectReceiveStream[SessionMessage | Exception]
WriteStream = MemoryObjectSendStream[SessionMessage]


@runtime_checkable
class SupportsStderr(Protocol):
    """Capability: a readable error stream from the server."""

    @property
    def stderr(self) -> ByteReceiveStream: ...


class Transport(ABC):
    """Carries MCP messages between a client session and a server.

    Subclasses set ``_read_stream`` and ``_write_stream`` in ``start()``.
    """

    _read_stream: ReadStream | None = None
    _write_stream: WriteStream | None = None

    @abstractmethod
    async def start(self) -> None:
        """Connect to the server.

        Raises:
            TransportStateError: If the transport was already started
        """

    @abstractmethod
    async def close(self) -> None:
        """Disconnect and release resources. Safe to call more than once."""

    @property
    @abstractmethod
    def is_started(self) -> bool: ...

    @property
    @abstractmethod
    def is_closed(self) -> bool: ...

    @property
    def read_stream(self) -> ReadStream:
        """Messages from the server."""
        if self._read_stream is None:
            raise TransportStateError(f"{type(self).__name__} is not started")
        return self._read_stream

    @property
    def write_stream(self) -> WriteStream:
        """Messages to the server."""
        if self._write_stream is None:
            raise TransportStateError(f"{type(self).__name__} is not started")
        return self._write_stream

    async def __aenter__(self) -> "Transport":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
