"""StdioTransport tests.

Test coverage:
- Message exchange over stdin/stdout
- Shutdown escalation (stdin close -> SIGTERM -> tree kill) and its timing
- No process left behind, including grandchildren
- Idempotent and concurrent close, close under cancellation
- Stderr capability
- Error paths (launch failure, non-zero exit, pipe close failures, refused kill)
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

import anyio
import mcp.types as types
import pytest
from mcp.shared.message import SessionMessage

from mcp_transport.errors import (
    LaunchError,
    PipeCloseError,
    SignalError,
    TransportStateError,
    WaitError,
)
from mcp_transport.runtime.launcher import IS_WINDOWS
from mcp_transport.runtime.tree_killer import KillReport, ProcessTreeKiller, get_tree_killer
from mcp_transport.transport import ShutdownState, StdioTransport, SupportsStderr

from conftest import is_alive, wait_until_gone

SLEEP_FOREVER = ["-c", "import time; time.sleep(100)"]


# =============================================================================
# Fixtures
# =============================================================================


def make_transport(fake_server: Path, *flags: str, **kwargs) -> StdioTransport:
    """Fake server transport with short timeouts for testing."""
    kwargs.setdefault("graceful_timeout", 0.5)
    kwargs.setdefault("term_timeout", 0.3)
    return StdioTransport(sys.executable, [str(fake_server), *flags], **kwargs)


async def receive(transport: StdioTransport, timeout: float = 10.0):
    return await asyncio.wait_for(transport.read_stream.receive(), timeout)


async def wait_ready(transport: StdioTransport) -> dict:
    """Consume the fake server's ready notification and return its params."""
    item = await receive(transport)
    assert isinstance(item, SessionMessage)
    notification = item.message.root
    assert isinstance(notification, types.JSONRPCNotification)
    assert notification.method == "ready"
    return notification.params


def request(request_id: int, method: str, params: dict | None = None) -> SessionMessage:
    return SessionMessage(
        types.JSONRPCMessage(
            types.JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params)
        )
    )


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Test start/close state handling."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_start_and_clean_close(self, fake_server: Path):
        transport = make_transport(fake_server)
        assert transport.state is None
        assert not transport.is_started

        await transport.start()
        assert transport.is_started
        assert transport.state is ShutdownState.RUNNING
        params = await wait_ready(transport)
        if not IS_WINDOWS:
            assert params["pid"] == transport.pid

        started = time.monotonic()
        await transport.close()
        elapsed = time.monotonic() - started

        assert elapsed < 0.5
        assert transport.state is ShutdownState.EXITED
        assert transport.returncode == 0
        assert transport.is_closed

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_start_twice(self, fake_server: Path):
        transport = make_transport(fake_server)
        await transport.start()
        try:
            with pytest.raises(TransportStateError):
                await transport.start()
        finally:
            await transport.close()

    def test_streams_before_start(self, fake_server: Path):
        transport = make_transport(fake_server)
        with pytest.raises(TransportStateError):
            transport.read_stream
        with pytest.raises(TransportStateError):
            transport.write_stream

    @pytest.mark.asyncio
    async def test_close_before_start(self, fake_server: Path):
        transport = make_transport(fake_server)
        await transport.close()
        assert not transport.is_started

    @pytest.mark.asyncio
    async def test_launch_failure(self):
        transport = StdioTransport("definitely-not-a-real-command-8c1f2e")
        with pytest.raises(LaunchError):
            await transport.start()
        assert not transport.is_started
        assert transport.pid is None

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_async_context_manager(self, fake_server: Path):
        async with make_transport(fake_server) as transport:
            await wait_ready(transport)
            pid = transport.pid
        assert transport.state is ShutdownState.EXITED
        assert not is_alive(pid)

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_from_spec(self, fake_server: Path):
        transport = make_transport(fake_server, cwd=str(fake_server.parent))
        clone = StdioTransport.from_spec(transport.command, graceful_timeout=0.5)
        assert clone.command == transport.command
        await clone.start()
        await wait_ready(clone)
        await clone.close()


# =============================================================================
# Message Exchange
# =============================================================================


class TestMessages:
    """Test newline-delimited JSON-RPC over the pipes."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_request_response(self, fake_server: Path):
        async with make_transport(fake_server) as transport:
            await wait_ready(transport)

            await transport.write_stream.send(request(1, "tools/list", {"cursor": "x"}))
            item = await receive(transport)

            assert isinstance(item, SessionMessage)
            response = item.message.root
            assert isinstance(response, types.JSONRPCResponse)
            assert response.id == 1
            assert response.result == {"method": "tools/list", "params": {"cursor": "x"}}

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_many_requests_in_order(self, fake_server: Path):
        async with make_transport(fake_server) as transport:
            await wait_ready(transport)

            async def send_all():
                for i in range(20):
                    await transport.write_stream.send(request(i, "ping"))

            sender = asyncio.create_task(send_all())
            ids = []
            for _ in range(20):
                item = await receive(transport)
                ids.append(item.message.root.id)
            await sender
            assert ids == list(range(20))

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_invalid_line_delivered_as_exception(self):
        script = "print('not json', flush=True); import sys; sys.stdin.read()"
        async with StdioTransport(sys.executable, ["-c", script]) as transport:
            item = await receive(transport)
            assert isinstance(item, Exception)

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_consumer_gone_does_not_block_shutdown(self, fake_server: Path):
        transport = make_transport(fake_server)
        await transport.start()
        await transport.read_stream.aclose()

        await transport.write_stream.send(request(1, "ping"))
        await transport.close()
        assert transport.returncode == 0


# =============================================================================
# Shutdown Escalation
# =============================================================================


class TestShutdownEscalation:
    """Test graceful -> SIGTERM -> kill with the default timeouts."""

    @pytest.mark.asyncio
    @pytest.mark.slow
    @pytest.mark.timeout(20)
    async def test_server_ignoring_eof(self):
        """A server that ignores stdin EOF stops within the graceful window plus SIGTERM."""
        transport = StdioTransport(
            sys.executable, SLEEP_FOREVER, graceful_timeout=3.0, term_timeout=1.0
        )
        await transport.start()
        pid = transport.pid

        started = time.monotonic()
        with pytest.raises(WaitError) as exc_info:
            await transport.close()
        elapsed = time.monotonic() - started

        assert 2.95 <= elapsed < 4.1
        assert exc_info.value.pid == pid
        if not IS_WINDOWS:
            assert exc_info.value.returncode == -signal.SIGTERM
        assert not is_alive(pid)

    @pytest.mark.asyncio
    @pytest.mark.slow
    @pytest.mark.timeout(20)
    @pytest.mark.skipif(IS_WINDOWS, reason="SIGTERM is POSIX only")
    async def test_server_ignoring_sigterm(self, fake_server: Path):
        transport = make_transport(
            fake_server, "--ignore-eof", "--ignore-term", graceful_timeout=3.0, term_timeout=1.0
        )
        await transport.start()
        await wait_ready(transport)
        pid = transport.pid

        started = time.monotonic()
        with pytest.raises(WaitError) as exc_info:
            await transport.close()
        elapsed = time.monotonic() - started

        assert 3.95 <= elapsed < 4.6
        assert exc_info.value.returncode == -signal.SIGKILL
        assert not is_alive(pid)

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_state_sequence(self, fake_server: Path):
        transport = make_transport(
            fake_server, "--ignore-eof", "--ignore-term", graceful_timeout=0.3, term_timeout=0.3
        )
        await transport.start()
        await wait_ready(transport)

        observed: list[ShutdownState] = []
        close_task = asyncio.create_task(transport.close())
        while not close_task.done():
            if not observed or observed[-1] is not transport.state:
                observed.append(transport.state)
            await asyncio.sleep(0.01)
        observed.append(transport.state)
        with pytest.raises(WaitError):
            await close_task

        order = list(ShutdownState)
        indexes = [order.index(state) for state in observed]
        assert indexes == sorted(indexes)
        assert ShutdownState.AWAITING_EXIT_1 in observed
        assert observed[-1] is ShutdownState.EXITED
        if not IS_WINDOWS:
            assert ShutdownState.AWAITING_EXIT_2 in observed
        else:
            assert ShutdownState.AWAITING_EXIT_2 not in observed

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_nonzero_exit(self, fake_server: Path):
        transport = make_transport(fake_server, "--exit-code", "3")
        await transport.start()

        with pytest.raises(WaitError) as exc_info:
            await transport.close()

        assert exc_info.value.returncode == 3
        assert transport.state is ShutdownState.EXITED


# =============================================================================
# Process Tree Cleanup
# =============================================================================


class TestTreeCleanup:
    """Test that no descendant survives close()."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_grandchildren_killed(self, fake_server: Path):
        transport = make_transport(fake_server, "--ignore-eof", "--ignore-term", "--spawn", "2")
        await transport.start()
        params = await wait_ready(transport)
        pids = [transport.pid, *params["children"]]
        assert len(pids) == 3

        with pytest.raises(WaitError):
            await transport.close()

        assert wait_until_gone(pids) == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    @pytest.mark.skipif(IS_WINDOWS, reason="SIGTERM is POSIX only")
    async def test_children_swept_after_sigterm_exit(self, fake_server: Path):
        """The root dies on SIGTERM but its children would not."""
        transport = make_transport(fake_server, "--ignore-eof", "--spawn", "2")
        await transport.start()
        params = await wait_ready(transport)
        children = params["children"]

        with pytest.raises(WaitError) as exc_info:
            await transport.close()

        assert exc_info.value.returncode == -signal.SIGTERM
        assert wait_until_gone(children) == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX process groups")
    async def test_children_swept_after_graceful_exit(self, fake_server: Path):
        """The root exits cleanly on EOF and leaves its children behind."""
        transport = make_transport(fake_server, "--spawn", "2")
        await transport.start()
        params = await wait_ready(transport)
        children = params["children"]
        assert len(children) == 2

        started = time.monotonic()
        await transport.close()
        elapsed = time.monotonic() - started

        assert transport.returncode == 0
        assert elapsed < transport.graceful_timeout
        assert wait_until_gone(children) == []


# =============================================================================
# Idempotent Close
# =============================================================================


class TestIdempotentClose:
    """Test repeated, concurrent and cancelled close()."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_double_close(self, fake_server: Path):
        transport = make_transport(fake_server)
        await transport.start()
        await transport.close()
        await transport.close()
        assert transport.state is ShutdownState.EXITED

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_concurrent_close_shares_result(self, fake_server: Path):
        transport = make_transport(fake_server, "--exit-code", "5")
        await transport.start()

        results = await asyncio.gather(
            transport.close(), transport.close(), return_exceptions=True
        )

        assert isinstance(results[0], WaitError)
        assert results[0] is results[1]
        with pytest.raises(WaitError) as exc_info:
            await transport.close()
        assert exc_info.value is results[0]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_cancelled_close_still_shuts_down(self, fake_server: Path):
        transport = make_transport(fake_server, "--ignore-eof", "--ignore-term")
        await transport.start()
        await wait_ready(transport)
        pid = transport.pid

        close_task = asyncio.create_task(transport.close())
        await asyncio.sleep(0.1)
        close_task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await close_task

        with pytest.raises(WaitError):
            await transport.close()
        assert transport.state is ShutdownState.EXITED
        assert not is_alive(pid)


# =============================================================================
# Stderr
# =============================================================================


class TestStderr:
    """Test the stderr capability."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stderr_readable(self, fake_server: Path):
        async with make_transport(fake_server, "--stderr", "server log line\n") as transport:
            assert isinstance(transport, SupportsStderr)
            data = b""
            while b"server log line" not in data:
                data += await asyncio.wait_for(transport.stderr.receive(), 10)

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stderr_callback(self, fake_server: Path):
        chunks: list[bytes] = []
        transport = make_transport(fake_server, "--stderr", "hello\n", on_stderr=chunks.append)
        await transport.start()
        await wait_ready(transport)

        deadline = time.monotonic() + 5
        while b"hello" not in b"".join(chunks) and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
        await transport.close()

        assert b"hello" in b"".join(chunks)

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_failing_callback_does_not_stop_drain(self, fake_server: Path):
        def explode(chunk: bytes) -> None:
            raise RuntimeError("callback failure")

        transport = make_transport(fake_server, "--stderr", "x\n", on_stderr=explode)
        await transport.start()
        await wait_ready(transport)
        await transport.close()
        assert transport.returncode == 0


# =============================================================================
# Error Paths
# =============================================================================


class TestPipeCloseFailure:
    """Test that a stdin close failure aborts the sequence."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stdin_close_error(self, fake_server: Path, monkeypatch):
        transport = make_transport(fake_server)
        await transport.start()
        await wait_ready(transport)
        process = transport._process

        async def broken_aclose():
            raise BrokenPipeError(32, "Broken pipe")

        monkeypatch.setattr(process.stdin, "aclose", broken_aclose)

        try:
            with pytest.raises(PipeCloseError) as exc_info:
                await transport.close()
            assert exc_info.value.pipe == "stdin"
            assert transport.state is ShutdownState.STDIN_CLOSING
            # Still running; nothing was signalled
            assert is_alive(transport.pid)
        finally:
            monkeypatch.undo()
            get_tree_killer().kill_tree(transport.pid)
            await transport._wait_task
            await transport._release()


# =============================================================================
# Shutdown Failures
# =============================================================================


class RefusingKiller(ProcessTreeKiller):
    """Tree killer whose kill is always refused by the OS."""

    def __init__(self):
        self.calls: list[int] = []

    def kill_tree(self, pid: int) -> KillReport:
        self.calls.append(pid)
        raise SignalError(pid, "SIGKILL", PermissionError(1, "Operation not permitted"))


class TestShutdownFailures:
    """Test that failed escalation steps still release the transport."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_refused_kill_releases_resources(self, fake_server: Path):
        killer = RefusingKiller()
        transport = make_transport(
            fake_server,
            "--ignore-eof",
            "--ignore-term",
            tree_killer=killer,
            graceful_timeout=0.2,
            term_timeout=0.2,
        )
        await transport.start()
        await wait_ready(transport)
        pid = transport.pid

        try:
            with pytest.raises(SignalError) as exc_info:
                await transport.close()

            assert killer.calls == [pid]
            assert transport.state is ShutdownState.KILL_SENT
            assert transport._stdout_task.done()
            assert transport._stderr_task.done()
            assert transport._launcher is None
            # A session reading the transport sees the stream end
            with pytest.raises(anyio.ClosedResourceError):
                await transport.read_stream.receive()

            with pytest.raises(SignalError) as again:
                await transport.close()
            assert again.value is exc_info.value
        finally:
            get_tree_killer().kill_tree(pid)
            await transport._wait_task
            await transport._process.aclose()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stderr_close_error_continues(self, fake_server: Path, monkeypatch, caplog):
        transport = make_transport(fake_server)
        await transport.start()
        await wait_ready(transport)

        async def broken_aclose():
            raise OSError(5, "Input/output error")

        monkeypatch.setattr(transport.stderr, "aclose", broken_aclose)

        with caplog.at_level(logging.WARNING, logger="mcp_transport"):
            await transport.close()

        assert transport.state is ShutdownState.EXITED
        assert transport.returncode == 0
        assert "failed to close stderr" in caplog.text
