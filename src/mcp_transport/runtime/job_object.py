"""Windows Job Object handle.

A Job Object configured with JOB_OBJECT_LIMIT_KILL_ON_JOB_CLOSE terminates
every member process when its last handle is closed, including when the
owning process dies. It is a second cleanup path next to the explicit tree
kill, for processes spawned after the kill's process snapshot.

Structures are declared with plain ctypes types so this module imports on
every platform; only ``JobObject.create`` touches kernel32.
"""

from __future__ import annotations

import ctypes
import logging
import sys

import psutil

__all__ = ["JobObject", "IS_WINDOWS"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

JOB_OBJECT_LIMIT_KILL_ON_JOB_CLOSE = 0x00002000
JOB_OBJECT_EXTENDED_LIMIT_INFORMATION = 9  # JOBOBJECTINFOCLASS
PROCESS_TERMINATE = 0x0001
PROCESS_SET_QUOTA = 0x0100


class JOBOBJECT_BASIC_LIMIT_INFORMATION(ctypes.Structure):
    _fields_ = [
        ("PerProcessUserTimeLimit", ctypes.c_int64),
        ("PerJobUserTimeLimit", ctypes.c_int64),
        ("LimitFlags", ctypes.c_uint32),
        ("MinimumWorkingSetSize", ctypes.c_size_t),
        ("MaximumWorkingSetSize", ctypes.c_size_t),
        ("ActiveProcessLimit", ctypes.c_uint32),
        ("Affinity", ctypes.c_size_t),
        ("PriorityClass", ctypes.c_uint32),
        ("SchedulingClass", ctypes.c_uint32),
    ]


class IO_COUNTERS(ctypes.Structure):
    _fields_ = [
        ("ReadOperationCount", ctypes.c_uint64),
        ("WriteOperationCount", ctypes.c_uint64),
        ("OtherOperationCount", ctypes.c_uint64),
        ("ReadTransferCount", ctypes.c_uint64),
        ("WriteTransferCount", ctypes.c_uint64),
        ("OtherTransferCount", ctypes.c_uint64),
    ]


class JOBOBJECT_EXTENDED_LIMIT_INFORMATION(ctypes.Structure):
    _fields_ = [
        ("BasicLimitInformation", JOBOBJECT_BASIC_LIMIT_INFORMATION),
        ("IoInfo", IO_COUNTERS),
        ("ProcessMemoryLimit", ctypes.c_size_t),
        ("JobMemoryLimit", ctypes.c_size_t),
        ("PeakProcessMemoryUsed", ctypes.c_size_t),
        ("PeakJobMemoryUsed", ctypes.c_size_t),
    ]


def _kernel32() -> ctypes.CDLL:
    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)  # type: ignore[attr-defined]

    kernel32.CreateJobObjectW.argtypes = [ctypes.c_void_p, ctypes.c_wchar_p]
    kernel32.CreateJobObjectW.restype = ctypes.c_void_p
    kernel32.SetInformationJobObject.argtypes = [
        ctypes.c_void_p,
        ctypes.c_int,
        ctypes.c_void_p,
        ctypes.c_uint32,
    ]
    kernel32.SetInformationJobObject.restype = ctypes.c_int
    kernel32.OpenProcess.argtypes = [ctypes.c_uint32, ctypes.c_int, ctypes.c_uint32]
    kernel32.OpenProcess.restype = ctypes.c_void_p
    kernel32.AssignProcessToJobObject.argtypes = [ctypes.c_void_p, ctypes.c_void_p]
    kernel32.AssignProcessToJobObject.restype = ctypes.c_int
    kernel32.CloseHandle.argtypes = [ctypes.c_void_p]
    kernel32.CloseHandle.restype = ctypes.c_int
    return kernel32


def _last_error() -> OSError:
    return ctypes.WinError(ctypes.get_last_error())  # type: ignore[attr-defined]


class JobObject:
    """Kill-on-close Windows Job Object.

    Created by ``ProcessLauncher`` on its first launch and closed with it:

        with JobObject.create() as job:
            job.assign_tree(process.pid)

    Closing the handle kills all member processes.
    """

    def __init__(self, handle: int, kernel32: ctypes.CDLL) -> None:
        self._handle: int | None = handle
        self._kernel32 = kernel32

    @classmethod
    def create(cls) -> "JobObject":
        """Create and configure a Job Object.

        Raises:
            OSError: If the platform is not Windows or a kernel32 call fails
        """
        if not IS_WINDOWS:
            raise OSError("Job Objects are only available on Windows")

        kernel32 = _kernel32()
        handle = kernel32.CreateJobObjectW(None, None)
        if not handle:
            raise _last_error()

        info = JOBOBJECT_EXTENDED_LIMIT_INFORMATION()
        info.BasicLimitInformation.LimitFlags = JOB_OBJECT_LIMIT_KILL_ON_JOB_CLOSE
        ok = kernel32.SetInformationJobObject(
            handle,
            JOB_OBJECT_EXTENDED_LIMIT_INFORMATION,
            ctypes.byref(info),
            ctypes.sizeof(info),
        )
        if not ok:
            error = _last_error()
            kernel32.CloseHandle(handle)
            raise error

        logger.debug(f"Created job object handle={handle:#x}")
        return cls(handle, kernel32)

    @property
    def closed(self) -> bool:
        return self._handle is None

    def assign(self, pid: int) -> None:
        """Add one process to the job.

        Raises:
            OSError: If the process cannot be opened or assigned
        """
        if self._handle is None:
            raise OSError("job object is closed")

        process_handle = self._kernel32.OpenProcess(
            PROCESS_SET_QUOTA | PROCESS_TERMINATE, False, pid
        )
        if not process_handle:
            raise _last_error()
        try:
            if not self._kernel32.AssignProcessToJobObject(self._handle, process_handle):
                raise _last_error()
        finally:
            self._kernel32.CloseHandle(process_handle)

    def assign_tree(self, pid: int) -> list[int]:
        """Add a process and its currently visible descendants to the job.

        Processes created later inherit the membership. Descendant failures
        are logged and skipped; a failure on the root is raised.

        Returns:
            Pids that were assigned
        """
        self.assign(pid)
        assigned = [pid]

        try:
            descendants = psutil.Process(pid).children(recursive=True)
        except psutil.Error as e:
            logger.debug(f"Cannot list descendants of pid={pid}: {e}")
            return assigned

        for child in descendants:
            try:
                self.assign(child.pid)
                assigned.append(child.pid)
            except OSError as e:
                logger.warning(f"Failed to assign pid={child.pid} to job object: {e}")
        return assigned

    def close(self) -> None:
        """Close the handle, killing any member still running."""
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        if not self._kernel32.CloseHandle(handle):
            logger.warning(f"Failed to close job object handle: {_last_error()}")
        else:
            logger.debug(f"Closed job object handle={handle:#x}")

    def __enter__(self) -> "JobObject":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
