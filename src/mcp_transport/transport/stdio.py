"""Stdio transport: an MCP server subprocess driven over its standard streams.

Messages are newline-delimited JSON-RPC on stdin/stdout; stderr is drained
into a ring buffer exposed through the ``stderr`` capability.

Shutdown runs a fixed escalation:

    RUNNING -> STDIN_CLOSING -> AWAITING_EXIT_1 (graceful_timeout, 3s)
            -> TERM_SENT -> AWAITING_EXIT_2 (term_timeout, 1s)
            -> KILL_SENT -> EXITED

Windows has no SIGTERM, so it goes from AWAITING_EXIT_1 straight to
KILL_SENT. The kill step terminates the whole process tree. On POSIX a root
that exits before the kill has its process group swept, so no descendant
outlives close().
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from enum import Enum
from pathlib import Path
from typing import Any

import anyio
import mcp.types as types
from anyio.abc import Process
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from anyio.streams.text import TextReceiveStream
from mcp.shared.message import SessionMessage

from ..config import get_config
from ..errors import (
    LaunchError,
    PipeCloseError,
    SignalError,
    TransportStateError,
    WaitError,
)
from ..runtime.launcher import IS_WINDOWS, CommandSpec, ProcessLauncher
from ..runtime.tree_killer import ProcessTreeKiller, get_tree_killer
from .base import Transport
from .stderr import StderrStream

__all__ = ["ShutdownState", "StdioTransport"]

logger = logging.getLogger(__name__)


class ShutdownState(Enum):
    """Progress through the shutdown sequence."""

    RUNNING = "running"
    STDIN_CLOSING = "stdin_closing"
    AWAITING_EXIT_1 = "awaiting_exit_1"
    TERM_SENT = "term_sent"
    AWAITING_EXIT_2 = "awaiting_exit_2"
    KILL_SENT = "kill_sent"
    EXITED = "exited"


class StdioTransport(Transport):
    """Transport to an MCP server running as a subprocess.

    The transport owns the process: nothing else may signal or wait on it.
    ``close()`` may be called any number of times, concurrently or not; the
    shutdown sequence runs once and every call gets its result.

    Example:
        transport = StdioTransport("uvx", ["my-mcp-server"], ["API_KEY=..."])
        await transport.start()
        try:
            async with ClientSession(transport.read_stream, transport.write_stream) as session:
                await session.initialize()
        finally:
            await transport.close()

    Attributes:
        graceful_timeout: Seconds to wait for exit after stdin is closed
        term_timeout: Seconds to wait for exit after SIGTERM
    """

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Sequence[str] | None = None,
        *,
        cwd: str | Path | None = None,
        launcher: ProcessLauncher | None = None,
        tree_killer: ProcessTreeKiller | None = None,
        graceful_timeout: float | None = None,
        term_timeout: float | None = None,
        on_stderr: Callable[[bytes], None] | None = None,
        stderr_buffer_size: int | None = None,
        encoding: str = "utf-8",
    ) -> None:
        config = get_config()
        self._spec = CommandSpec.create(command, args, env, cwd)
        self.graceful_timeout = (
            graceful_timeout if graceful_timeout is not None else config.graceful_timeout
        )
        self.term_timeout = term_timeout if term_timeout is not None else config.term_timeout
        self._encoding = encoding
        self._on_stderr = on_stderr

        # A transport without a shared launcher owns (and closes) its own
        self._launcher = launcher
        self._owns_launcher = launcher is None
        self._killer = tree_killer or get_tree_killer()

        self._process: Process | None = None
        self._state: ShutdownState | None = None
        self._stderr = StderrStream(
            stderr_buffer_size if stderr_buffer_size is not None else config.stderr_buffer_size
        )

        self._read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception] | None = None
        self._write_stream_reader: MemoryObjectReceiveStream[SessionMessage] | None = None
        self._discard_stdout = False

        self._wait_task: asyncio.Task[int] | None = None
        self._stdout_task: asyncio.Task[None] | None = None
        self._stdin_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None

    @classmethod
    def from_spec(cls, spec: CommandSpec, **kwargs: Any) -> "StdioTransport":
        """Build a transport from a ``CommandSpec``."""
        return cls(spec.command, spec.args, spec.env, cwd=spec.cwd, **kwargs)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def command(self) -> CommandSpec:
        return self._spec

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    @property
    def state(self) -> ShutdownState | None:
        """Shutdown progress; None before ``start()``."""
        return self._state

    @property
    def stderr(self) -> StderrStream:
        """The server's stderr output."""
        return self._stderr

    @property
    def is_started(self) -> bool:
        return self._process is not None

    @property
    def is_closed(self) -> bool:
        return self._close_task is not None and self._close_task.done()

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Launch the subprocess and start forwarding messages.

        Raises:
            LaunchError: If the subprocess could not be created
            TransportStateError: If already started
        """
        if self._process is not None:
            raise TransportStateError("StdioTransport already started")

        if self._launcher is None:
            self._launcher = ProcessLauncher()

        try:
            process = await self._launcher.launch(self._spec)
        except LaunchError:
            self._release_launcher()
            raise

        self._process = process
        self._state = ShutdownState.RUNNING

        self._read_stream_writer, self._read_stream = anyio.create_memory_object_stream[
            SessionMessage | Exception
        ](0)
        self._write_stream, self._write_stream_reader = anyio.create_memory_object_stream[
            SessionMessage
        ](0)

        pid = process.pid
        # Single-result channel for the shutdown sequence
        self._wait_task = asyncio.create_task(process.wait(), name=f"stdio-wait-{pid}")
        self._stdout_task = asyncio.create_task(
            self._read_stdout(process), name=f"stdio-stdout-{pid}"
        )
        self._stdin_task = asyncio.create_task(
            self._write_stdin(process), name=f"stdio-stdin-{pid}"
        )
        self._stderr_task = asyncio.create_task(
            self._drain_stderr(process), name=f"stdio-stderr-{pid}"
        )

        logger.debug(f"Stdio transport started pid={pid} argv={self._spec.argv}")

    # -------------------------------------------------------------------------
    # Stream pumps
    # -------------------------------------------------------------------------

    async def _read_stdout(self, process: Process) -> None:
        """Parse stdout lines into messages until EOF."""
        assert process.stdout is not None
        assert self._read_stream_writer is not None

        buffer = ""
        async with self._read_stream_writer:
            try:
                async for chunk in TextReceiveStream(
                    process.stdout, encoding=self._encoding, errors="replace"
                ):
                    lines = (buffer + chunk).split("\n")
                    buffer = lines.pop()
                    for line in lines:
                        await self._deliver_line(line)
            except anyio.ClosedResourceError:
                pass

        logger.debug(f"stdout reached EOF pid={process.pid}")

    async def _deliver_line(self, line: str) -> None:
        # Keep reading after the consumer leaves so the child never blocks
        if self._discard_stdout or not line.strip():
            return
        assert self._read_stream_writer is not None

        item: SessionMessage | Exception
        try:
            item = SessionMessage(types.JSONRPCMessage.model_validate_json(line))
        except ValueError as exc:
            logger.debug(f"Invalid JSON-RPC line from server: {line[:200]!r}")
            item = exc

        try:
            await self._read_stream_writer.send(item)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Read stream closed by consumer, discarding further stdout")
            self._discard_stdout = True

    async def _write_stdin(self, process: Process) -> None:
        """Serialize outgoing messages to stdin, one JSON document per line."""
        assert process.stdin is not None
        assert self._write_stream_reader is not None

        async with self._write_stream_reader:
            async for session_message in self._write_stream_reader:
                payload = session_message.message.model_dump_json(
                    by_alias=True, exclude_none=True
                )
                try:
                    await process.stdin.send((payload + "\n").encode(self._encoding))
                except (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError) as e:
                    logger.debug(f"stdin closed for pid={process.pid}: {e}")
                    return

    async def _drain_stderr(self, process: Process) -> None:
        """Drain stderr to prevent buffer deadlock."""
        assert process.stderr is not None

        try:
            async for chunk in process.stderr:
                self._stderr.feed(chunk)
                if self._on_stderr:
                    try:
                        self._on_stderr(chunk)
                    except Exception as e:
                        logger.warning(f"Error in stderr callback: {e}")
        except anyio.ClosedResourceError:
            pass
        finally:
            self._stderr.feed_eof()

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Shut the server down and wait for it to exit.

        Blocks for at most graceful_timeout + term_timeout before the tree
        kill. Cancelling the caller does not abort the sequence.

        Raises:
            PipeCloseError: If stdin could not be closed
            SignalError: If SIGTERM or the tree kill was refused
            WaitError: If the process exited with a non-zero status
        """
        if self._process is None:
            self._release_launcher()
            return

        # No await between the check and the assignment
        if self._close_task is None:
            self._close_task = asyncio.create_task(
                self._shutdown(self._process), name=f"stdio-close-{self._process.pid}"
            )
        await asyncio.shield(self._close_task)

    async def _shutdown(self, process: Process) -> None:
        """Run the escalation once; the result is shared by every close().

        Args:
            process: The running server process

        Raises:
            PipeCloseError: If stdin could not be closed (nothing is released)
            SignalError: If the process could not be signalled; pumps,
                streams and an owned launcher are released before raising
            WaitError: If the process exited with a non-zero status
        """
        assert self._wait_task is not None
        pid = process.pid
        logger.debug(f"Closing stdio transport pid={pid}")

        await self._close_pipes(process)

        try:
            self._state = ShutdownState.AWAITING_EXIT_1
            if await self._wait_for_exit(self.graceful_timeout):
                if not IS_WINDOWS:
                    await self._sweep(pid)
            else:
                await self._escalate(process)
        except SignalError:
            # The process may still be alive, so it is not waited on
            await self._release_streams()
            raise

        self._state = ShutdownState.EXITED
        await self._release()

        returncode = self._wait_task.result()
        logger.debug(f"Stdio transport closed pid={pid} returncode={returncode}")
        if returncode != 0:
            raise WaitError(pid, returncode)

    async def _close_pipes(self, process: Process) -> None:
        """Close stdin (required for the child to see EOF), then stderr.

        Args:
            process: The running server process

        Raises:
            PipeCloseError: If stdin could not be closed. A stderr close
                failure is logged and shutdown continues.
        """
        assert process.stdin is not None
        self._state = ShutdownState.STDIN_CLOSING

        # Stop the writer before closing the pipe underneath it
        await self._cancel_task(self._stdin_task)
        try:
            await process.stdin.aclose()
        except OSError as e:
            raise PipeCloseError("stdin", e) from e

        try:
            await self._stderr.aclose()
        except OSError as e:
            logger.warning(f"{PipeCloseError('stderr', e)}, continuing shutdown")

    async def _escalate(self, process: Process) -> None:
        """SIGTERM (POSIX only), then kill the whole tree.

        Returns once the process has exited.

        Args:
            process: Process still running after the graceful window

        Raises:
            SignalError: If SIGTERM was refused or the root could not be killed
        """
        assert self._wait_task is not None
        pid = process.pid

        if not IS_WINDOWS:
            self._state = ShutdownState.TERM_SENT
            logger.info(
                f"Process pid={pid} still running after {self.graceful_timeout}s, "
                f"sending SIGTERM"
            )
            try:
                # The process only; its group is left to the tree kill
                process.terminate()
            except ProcessLookupError:
                pass
            except OSError as e:
                raise SignalError(pid, "SIGTERM", e) from e

            self._state = ShutdownState.AWAITING_EXIT_2
            if await self._wait_for_exit(self.term_timeout):
                await self._sweep(pid)
                return

        self._state = ShutdownState.KILL_SENT
        logger.info(f"Killing process tree of pid={pid}")
        report = await asyncio.to_thread(self._killer.kill_tree, pid)
        logger.debug(
            f"Tree kill pid={pid}: killed={report.killed} errors={len(report.errors)}"
        )

        await asyncio.wait({self._wait_task})

    async def _sweep(self, pid: int) -> None:
        """Kill group members left behind by a root that has already exited.

        Failures are logged only; the root is gone and its exit status
        stands.

        Args:
            pid: Pid (and process group id) of the exited root
        """
        try:
            report = await asyncio.to_thread(self._killer.kill_tree, pid)
        except SignalError as e:
            logger.debug(f"Descendant sweep for pid={pid} failed: {e}")
            return
        if report.errors:
            logger.debug(f"Descendant sweep for pid={pid}: {len(report.errors)} error(s)")

    async def _wait_for_exit(self, timeout: float) -> bool:
        """Race the exit waiter against ``timeout`` without cancelling it.

        Args:
            timeout: Seconds to wait

        Returns:
            True if the process exited within ``timeout``
        """
        assert self._wait_task is not None
        done, _ = await asyncio.wait({self._wait_task}, timeout=timeout)
        return bool(done)

    async def _release(self) -> None:
        """Release everything once the process has exited."""
        await self._release_streams()
        if self._process is not None:
            await self._process.aclose()

    async def _release_streams(self) -> None:
        """Stop the pumps, close the message streams and an owned launcher.

        Does not wait on the process, so it is safe while it may still run.
        """
        for task in (self._stdout_task, self._stdin_task, self._stderr_task):
            await self._cancel_task(task)

        for stream in (
            self._read_stream,
            self._write_stream,
            self._read_stream_writer,
            self._write_stream_reader,
        ):
            if stream is not None:
                await stream.aclose()

        self._release_launcher()

    def _release_launcher(self) -> None:
        if self._owns_launcher and self._launcher is not None:
            self._launcher.close()
            self._launcher = None

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
