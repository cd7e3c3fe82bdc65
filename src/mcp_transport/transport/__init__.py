"""Transports carrying MCP messages between a client session and a server."""

from __future__ import annotations

from .base import SupportsStderr, Transport
from .inprocess import InProcessTransport
from .stderr import StderrStream
from .stdio import ShutdownState, StdioTransport

__all__ = [
    "InProcessTransport",
    "ShutdownState",
    "StderrStream",
    "StdioTransport",
    "SupportsStderr",
    "Transport",
]
