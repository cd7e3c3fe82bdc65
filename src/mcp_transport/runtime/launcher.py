"""Subprocess launcher.

Starts an MCP server subprocess with all three standard streams piped and
with the platform attributes the tree killer relies on:

- POSIX: start_new_session=True, so the child leads its own process group
  and a single killpg() reaches everything it spawns
- Windows: CREATE_BREAKAWAY_FROM_JOB | CREATE_NO_WINDOW with a hidden
  window, then membership in the launcher's own Job Object
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio
from anyio.abc import Process

from ..config import get_config
from ..errors import LaunchError
from .job_object import JobObject

__all__ = [
    "CommandSpec",
    "ProcessLauncher",
    "IS_WINDOWS",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

# Only defined by the subprocess module on Windows
CREATE_BREAKAWAY_FROM_JOB = 0x01000000
CREATE_NO_WINDOW = 0x08000000


@dataclass(frozen=True)
class CommandSpec:
    """Command to launch.

    Attributes:
        command: Executable name or path
        args: Arguments after the executable
        env: KEY=VALUE entries overriding or extending the current environment
        cwd: Working directory (None = inherit)
    """

    command: str
    args: tuple[str, ...] = ()
    env: tuple[str, ...] = ()
    cwd: Path | None = None

    @classmethod
    def create(
        cls,
        command: str,
        args: Sequence[str] = (),
        env: Sequence[str] | None = None,
        cwd: str | Path | None = None,
    ) -> "CommandSpec":
        """Build a spec from any sequences, freezing them into tuples."""
        return cls(
            command=command,
            args=tuple(args),
            env=tuple(env or ()),
            cwd=Path(cwd) if cwd is not None else None,
        )

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def build_env(self) -> dict[str, str]:
        """Return the current environment overlaid with ``env`` entries."""
        merged = dict(os.environ)
        for entry in self.env:
            key, sep, value = entry.partition("=")
            if not sep or not key:
                logger.warning(f"Ignoring malformed environment entry {entry!r}")
                continue
            merged[key] = value
        return merged


class ProcessLauncher:
    """Launches subprocesses with tree-kill friendly attributes.

    On Windows the launcher owns a Job Object, created on the first launch
    and closed by ``close()``. Share one launcher across transports to share
    the job; a transport without an explicit launcher owns a private one.

    Example:
        with ProcessLauncher() as launcher:
            process = await launcher.launch(CommandSpec.create("my-server"))
    """

    def __init__(self, use_job_object: bool | None = None) -> None:
        if use_job_object is None:
            use_job_object = get_config().use_job_object
        self.use_job_object = use_job_object and IS_WINDOWS
        self._job: JobObject | None = None
        self._job_failed = False
        self._closed = False

    @property
    def job(self) -> JobObject | None:
        """The Job Object, once created."""
        return self._job

    @property
    def closed(self) -> bool:
        return self._closed

    async def launch(self, spec: CommandSpec) -> Process:
        """Start the subprocess described by ``spec``.

        Returns:
            The running process with stdin, stdout and stderr pipes

        Raises:
            LaunchError: If the executable is missing or the OS refuses
        """
        if self._closed:
            raise RuntimeError("launcher is closed")

        logger.debug(
            f"[SUBPROCESS] Launching: argv={spec.argv} cwd={spec.cwd} "
            f"env_overrides={len(spec.env)}"
        )

        try:
            # Popen closes every pipe it created before re-raising
            process = await anyio.open_process(
                spec.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=spec.cwd,
                env=spec.build_env(),
                **self._build_process_kwargs(),
            )
        except OSError as e:
            logger.debug(f"[SUBPROCESS] Launch failed: {spec.command}: {e}")
            raise LaunchError(spec.command, e) from e

        logger.debug(f"[SUBPROCESS] Started: pid={process.pid}")

        if self.use_job_object:
            self._assign_job(process.pid)

        return process

    def _build_process_kwargs(self) -> dict[str, Any]:
        """Build platform-specific kwargs for open_process."""
        kwargs: dict[str, Any] = {}

        if IS_WINDOWS:
            startupinfo = subprocess.STARTUPINFO()  # type: ignore[attr-defined]
            startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW  # type: ignore[attr-defined]
            startupinfo.wShowWindow = 0  # SW_HIDE
            kwargs["startupinfo"] = startupinfo
            kwargs["creationflags"] = CREATE_BREAKAWAY_FROM_JOB | CREATE_NO_WINDOW
        else:
            # setsid(): new session and process group with pgid == pid
            kwargs["start_new_session"] = True

        return kwargs

    def _assign_job(self, pid: int) -> None:
        """Put the process tree in the Job Object, best-effort."""
        if self._job is None and not self._job_failed:
            try:
                self._job = JobObject.create()
            except OSError as e:
                # The explicit tree kill remains the primary cleanup path
                self._job_failed = True
                logger.warning(f"Failed to create job object: {e}")

        if self._job is None:
            return

        try:
            assigned = self._job.assign_tree(pid)
            logger.debug(f"Assigned pids {assigned} to job object")
        except OSError as e:
            logger.warning(f"Failed to assign pid={pid} to job object: {e}")

    def close(self) -> None:
        """Release the Job Object, killing any member still alive."""
        if self._closed:
            return
        self._closed = True
        if self._job is not None:
            self._job.close()
            self._job = None

    def __enter__(self) -> "ProcessLauncher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
