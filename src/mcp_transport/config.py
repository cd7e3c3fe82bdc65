"""Transport configuration from environment variables.

Environment variables:
    MCP_TRANSPORT_GRACEFUL_TIMEOUT: Seconds to wait for exit after stdin is closed
        - Default 3.0, clamped to 0.1-60

    MCP_TRANSPORT_TERM_TIMEOUT: Seconds to wait for exit after SIGTERM (POSIX only)
        - Default 1.0, clamped to 0.1-60

    MCP_TRANSPORT_JOB_OBJECT: Put launched processes in a Windows Job Object
        - true/1/yes = on (default)
        - false/0/no = off

    MCP_TRANSPORT_STDERR_BUFFER: Bytes of subprocess stderr kept for readers
        - Default 4194304 (4MB), older data is dropped first

    MCP_TRANSPORT_LOG_DEBUG: Debug logging
        - true/1/yes = on (log to a temp file)
        - false/0/no = off (default, log to stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_GRACEFUL_TIMEOUT = 3.0
DEFAULT_TERM_TIMEOUT = 1.0
DEFAULT_STDERR_BUFFER = 4 * 1024 * 1024


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None, default: float) -> float:
    """Parse a timeout in seconds, clamped to 0.1-60."""
    if not value:
        return default
    try:
        timeout = float(value)
    except ValueError:
        return default
    return max(0.1, min(timeout, 60.0))


def _parse_size(value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        size = int(value)
    except ValueError:
        return default
    return size if size > 0 else default


def _generate_log_file_path() -> str:
    """Build a timestamped log file path in the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "mcp-transport"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"transport_debug_{timestamp}.log"

    return str(log_file.resolve())


@dataclass
class Config:
    """Transport configuration.

    Attributes:
        graceful_timeout: Seconds between closing stdin and escalating
        term_timeout: Seconds between SIGTERM and the tree kill
        use_job_object: Whether launchers create a Windows Job Object
        stderr_buffer_size: Bytes of stderr kept for readers
        log_debug: Debug logging to a temp file
        log_file: Log file path (set when log_debug is on)
    """

    graceful_timeout: float = DEFAULT_GRACEFUL_TIMEOUT
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    use_job_object: bool = True
    stderr_buffer_size: int = DEFAULT_STDERR_BUFFER
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(graceful_timeout={self.graceful_timeout}, "
            f"term_timeout={self.term_timeout}, "
            f"use_job_object={self.use_job_object}, "
            f"stderr_buffer_size={self.stderr_buffer_size}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("MCP_TRANSPORT_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        graceful_timeout=_parse_timeout(
            os.environ.get("MCP_TRANSPORT_GRACEFUL_TIMEOUT"), DEFAULT_GRACEFUL_TIMEOUT
        ),
        term_timeout=_parse_timeout(
            os.environ.get("MCP_TRANSPORT_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT
        ),
        use_job_object=_parse_bool(os.environ.get("MCP_TRANSPORT_JOB_OBJECT"), default=True),
        stderr_buffer_size=_parse_size(
            os.environ.get("MCP_TRANSPORT_STDERR_BUFFER"), DEFAULT_STDERR_BUFFER
        ),
        log_debug=log_debug,
        log_file=log_file,
    )


# Loaded on first use
_config: Config | None = None


def get_config() -> Config:
    """Return the cached configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration (used by tests)."""
    global _config
    _config = load_config()
    return _config
