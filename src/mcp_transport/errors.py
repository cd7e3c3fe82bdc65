"""Transport error types.

Every error raised by this package derives from ``TransportError`` so callers
can catch transport failures without catching protocol errors from ``mcp``.
"""

from __future__ import annotations

__all__ = [
    "TransportError",
    "TransportStateError",
    "LaunchError",
    "PipeCloseError",
    "SignalError",
    "EnumerationError",
    "WaitError",
    "UnsupportedCapabilityError",
]


class TransportError(Exception):
    """Base class for transport errors."""
    pass


class TransportStateError(TransportError):
    """Operation not valid in the transport's current state."""
    pass


class LaunchError(TransportError):
    """The subprocess could not be created.

    Attributes:
        command: Executable that failed to start
        os_error: Underlying OS error
    """

    def __init__(self, command: str, os_error: OSError) -> None:
        self.command = command
        self.os_error = os_error
        super().__init__(f"failed to start {command!r}: {os_error}")


class PipeCloseError(TransportError):
    """Closing stdin or stderr failed.

    Attributes:
        pipe: "stdin" or "stderr"
    """

    def __init__(self, pipe: str, cause: BaseException) -> None:
        self.pipe = pipe
        self.cause = cause
        super().__init__(f"failed to close {pipe}: {cause}")


class SignalError(TransportError):
    """The OS refused to deliver a signal or terminate a process.

    Attributes:
        pid: Target process id
        signal_name: "SIGTERM", "SIGKILL" or "TERMINATE"
    """

    def __init__(self, pid: int, signal_name: str, cause: BaseException | None = None) -> None:
        self.pid = pid
        self.signal_name = signal_name
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to send {signal_name} to pid {pid}{detail}")


class EnumerationError(TransportError):
    """Listing the process table failed."""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(f"failed to enumerate processes: {cause}")


class WaitError(TransportError):
    """The subprocess exited unsuccessfully.

    Attributes:
        pid: Process id
        returncode: Exit status (negative on POSIX when killed by a signal)
    """

    def __init__(self, pid: int, returncode: int) -> None:
        self.pid = pid
        self.returncode = returncode
        super().__init__(f"process {pid} exited with status {returncode}")


class UnsupportedCapabilityError(TransportError):
    """The transport does not provide the requested capability."""

    def __init__(self, capability: str, transport: object) -> None:
        self.capability = capability
        self.transport_type = type(transport).__name__
        super().__init__(f"{self.transport_type} does not support {capability}")
