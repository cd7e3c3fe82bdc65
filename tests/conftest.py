"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from pathlib import Path

import psutil
import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the path (development checkout)
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# Helper scripts started as subprocesses
FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_SERVER = FIXTURES_DIR / "fake_server.py"
ECHO_SERVER = FIXTURES_DIR / "echo_server.py"


@pytest.fixture
def fake_server() -> Path:
    """Line-based JSON-RPC responder with shutdown misbehaviour switches."""
    return FAKE_SERVER


@pytest.fixture
def echo_server() -> Path:
    """Real FastMCP server over stdio with an ``echo`` tool."""
    return ECHO_SERVER


@pytest.fixture
def python() -> str:
    return sys.executable


def is_alive(pid: int) -> bool:
    """True if ``pid`` exists and is not a zombie."""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def wait_until_gone(pids: list[int], timeout: float = 2.0) -> list[int]:
    """Poll until every pid is gone; return the survivors."""
    deadline = time.monotonic() + timeout
    alive = [pid for pid in pids if is_alive(pid)]
    while alive and time.monotonic() < deadline:
        time.sleep(0.05)
        alive = [pid for pid in alive if is_alive(pid)]
    return alive


async def read_ready_line(stream, timeout: float = 10.0) -> dict:
    """Read the fake server's ``ready`` notification from a raw stdout stream."""
    buffer = b""

    async def _read() -> dict:
        nonlocal buffer
        while b"\n" not in buffer:
            buffer += await stream.receive()
        line, _, _ = buffer.partition(b"\n")
        return json.loads(line)

    return await asyncio.wait_for(_read(), timeout)
