"""Bounded buffer exposing a subprocess's stderr as a byte stream.

The stdio transport drains the stderr pipe continuously into this buffer so
the child never blocks on a full pipe, whether or not anyone reads. When the
buffer exceeds its limit the oldest chunks are dropped.
"""

from __future__ import annotations

import asyncio
from collections import deque

import anyio
from anyio.abc import ByteReceiveStream

__all__ = ["StderrStream"]


class StderrStream(ByteReceiveStream):
    """Ring-buffered ``ByteReceiveStream`` fed by the stderr drain task."""

    def __init__(self, max_size: int) -> None:
        self._chunks: deque[bytes] = deque()
        self._size = 0
        self._max_size = max_size
        self._dropped = 0
        self._eof = False
        self._closed = False
        self._readable = asyncio.Event()

    @property
    def buffered(self) -> int:
        """Bytes currently held."""
        return self._size

    @property
    def dropped(self) -> int:
        """Bytes discarded because the buffer was full."""
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes) -> None:
        if self._closed or not chunk:
            return
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self._max_size and len(self._chunks) > 1:
            oldest = self._chunks.popleft()
            self._size -= len(oldest)
            self._dropped += len(oldest)
        self._readable.set()

    def feed_eof(self) -> None:
        self._eof = True
        self._readable.set()

    def tail(self, max_bytes: int = 4096) -> bytes:
        """Return up to ``max_bytes`` of the newest data without consuming it."""
        data = b"".join(self._chunks)
        return data[-max_bytes:]

    async def receive(self, max_bytes: int = 65536) -> bytes:
        while True:
            if self._closed:
                raise anyio.ClosedResourceError
            if self._chunks:
                chunk = self._chunks.popleft()
                if len(chunk) > max_bytes:
                    self._chunks.appendleft(chunk[max_bytes:])
                    chunk = chunk[:max_bytes]
                self._size -= len(chunk)
                return chunk
            if self._eof:
                raise anyio.EndOfStream
            self._readable.clear()
            await self._readable.wait()

    async def aclose(self) -> None:
        self._closed = True
        self._chunks.clear()
        self._size = 0
        # Wake readers so they observe the close
        self._readable.set()
