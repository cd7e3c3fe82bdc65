"""Process tree termination.

Kills a process and every live descendant. Two strategies:

- PosixTreeKiller: one SIGKILL addressed to the process group. Works
  because the launcher makes each server its own group leader. A descendant
  that moved to another group (setsid/setpgid) is not reached.
- WindowsTreeKiller: walks a psutil snapshot of the process table and
  terminates children before their parents. The launcher's Job Object
  catches processes spawned after the snapshot.

Both are idempotent: a process that is already gone counts as killed.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import psutil

from ..errors import EnumerationError, SignalError, TransportError

__all__ = [
    "KillReport",
    "ProcessTreeKiller",
    "PosixTreeKiller",
    "WindowsTreeKiller",
    "get_tree_killer",
]

logger = logging.getLogger(__name__)


@dataclass
class KillReport:
    """Outcome of a tree kill.

    Attributes:
        root_pid: Process the kill started from
        killed: Pids terminated (or found already gone), in kill order
        errors: Per-node failures that did not stop the walk
    """

    root_pid: int
    killed: list[int] = field(default_factory=list)
    errors: list[TransportError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ProcessTreeKiller(ABC):
    """Terminates a process and all of its descendants."""

    @abstractmethod
    def kill_tree(self, pid: int) -> KillReport:
        """Kill ``pid`` and its descendants.

        Raises:
            SignalError: If the root process could not be killed
        """


class PosixTreeKiller(ProcessTreeKiller):
    """SIGKILL to the whole process group led by the root."""

    def kill_tree(self, pid: int) -> KillReport:
        """Send SIGKILL to the process group ``pid``.

        Args:
            pid: Root pid, which is also the process group id

        Returns:
            Report with the root listed as killed (also when already gone)

        Raises:
            SignalError: If the OS refused the signal
        """
        report = KillReport(root_pid=pid)
        try:
            # pgid == pid for launcher-started processes. os.getpgid() is not
            # used since it fails once the leader is reaped while members live.
            os.killpg(pid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pid}")
        except ProcessLookupError:
            logger.debug(f"Process group pgid={pid} already gone")
        except OSError as e:
            logger.warning(f"Failed to kill process group pgid={pid}: {e}")
            raise SignalError(pid, "SIGKILL", e) from e
        report.killed.append(pid)
        return report


class WindowsTreeKiller(ProcessTreeKiller):
    """Depth-first kill over a snapshot of the process table."""

    def kill_tree(self, pid: int) -> KillReport:
        """Kill ``pid`` and its descendants, children before parents.

        Args:
            pid: Root of the tree

        Returns:
            Report of killed pids and per-node failures

        Raises:
            SignalError: If the root could not be killed, after every other
                node was attempted
        """
        report = KillReport(root_pid=pid)

        try:
            children_of = self._snapshot()
        except EnumerationError as e:
            logger.warning(f"{e}; killing pid={pid} only")
            report.errors.append(e)
            children_of = {}

        root_error: SignalError | None = None
        for target in self._kill_order(pid, children_of):
            try:
                self._kill_one(target)
            except SignalError as e:
                logger.warning(f"Failed to kill pid={target}: {e.cause}")
                report.errors.append(e)
                if target == pid:
                    root_error = e
                continue
            report.killed.append(target)

        if root_error is not None:
            raise root_error
        return report

    @staticmethod
    def _snapshot() -> dict[int, list[int]]:
        """Map each pid to its child pids.

        Raises:
            EnumerationError: If the process table cannot be listed
        """
        children_of: dict[int, list[int]] = {}
        try:
            for proc in psutil.process_iter(["pid", "ppid"]):
                info = proc.info
                ppid = info.get("ppid")
                child = info["pid"]
                if ppid is None or ppid == child:
                    continue
                children_of.setdefault(ppid, []).append(child)
        except (psutil.Error, OSError) as e:
            raise EnumerationError(e) from e
        return children_of

    @staticmethod
    def _kill_order(root: int, children_of: dict[int, list[int]]) -> list[int]:
        """Return the tree below ``root`` with every child before its parent.

        Uses an explicit stack; ``seen`` guards against cycles from pid reuse.
        """
        discovered: list[int] = []
        seen: set[int] = set()
        stack = [root]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            discovered.append(current)
            stack.extend(children_of.get(current, ()))
        # Discovery order puts each parent before its subtree
        discovered.reverse()
        return discovered

    @staticmethod
    def _kill_one(pid: int) -> None:
        """Terminate one process; an already exited process counts as killed.

        Raises:
            SignalError: If the process could not be terminated
        """
        try:
            psutil.Process(pid).kill()
            logger.debug(f"Terminated pid={pid}")
        except psutil.NoSuchProcess:
            logger.debug(f"Process pid={pid} already gone")
        except (psutil.Error, OSError) as e:
            raise SignalError(pid, "TERMINATE", e) from e


def get_tree_killer() -> ProcessTreeKiller:
    """Return the tree killer for the running platform."""
    if sys.platform == "win32":
        return WindowsTreeKiller()
    return PosixTreeKiller()
