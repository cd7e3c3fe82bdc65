"""Runtime module for subprocess launching and process tree termination.

This module starts MCP server subprocesses in an isolated process group (or
Windows Job Object) and kills whole process trees on shutdown.
"""

from __future__ import annotations

from .job_object import JobObject
from .launcher import CommandSpec, ProcessLauncher
from .tree_killer import (
    KillReport,
    PosixTreeKiller,
    ProcessTreeKiller,
    WindowsTreeKiller,
    get_tree_killer,
)

__all__ = [
    "CommandSpec",
    "JobObject",
    "KillReport",
    "PosixTreeKiller",
    "ProcessLauncher",
    "ProcessTreeKiller",
    "WindowsTreeKiller",
    "get_tree_killer",
]
