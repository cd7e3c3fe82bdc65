"""mcp-transport - MCP client transports with reliable subprocess shutdown.

Environment variables:
    MCP_TRANSPORT_GRACEFUL_TIMEOUT: Wait after closing stdin (default 3.0s)
    MCP_TRANSPORT_TERM_TIMEOUT: Wait after SIGTERM (default 1.0s)
    MCP_TRANSPORT_JOB_OBJECT: Use a Windows Job Object (default true)
    MCP_TRANSPORT_STDERR_BUFFER: Bytes of server stderr kept (default 4 MiB)
    MCP_TRANSPORT_LOG_DEBUG: Debug log to a temp file (default false)

Usage:
    mcp-transport -- uvx my-mcp-server
"""

__version__ = "0.1.0"

from .client import Client, get_stderr, new_in_process_client, new_stdio_client
from .errors import (
    EnumerationError,
    LaunchError,
    PipeCloseError,
    SignalError,
    TransportError,
    TransportStateError,
    UnsupportedCapabilityError,
    WaitError,
)
from .transport import InProcessTransport, ShutdownState, StdioTransport, Transport

__all__ = [
    "__version__",
    "Client",
    "EnumerationError",
    "InProcessTransport",
    "LaunchError",
    "PipeCloseError",
    "ShutdownState",
    "SignalError",
    "StdioTransport",
    "Transport",
    "TransportError",
    "TransportStateError",
    "UnsupportedCapabilityError",
    "WaitError",
    "get_stderr",
    "new_in_process_client",
    "new_stdio_client",
]
