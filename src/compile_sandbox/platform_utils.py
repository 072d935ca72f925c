"""Cross-platform OS detection and process-tree management.

Uses psutil's built-in OS detection constants for platform identification.
Provides a PID-reuse safe wrapper that signals a child's whole process
group and every descendant, so programs that fork cannot leak grandchildren.
"""

import asyncio
import contextlib
import os
import signal
from enum import Enum, auto
from functools import cache

import psutil

from compile_sandbox import constants


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (production environment; rlimits and namespaces available)."""

    MACOS = auto()
    """macOS (development environment; rlimits only)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for safer PID
    monitoring. The child is expected to be started with
    ``start_new_session=True`` so that its PID is also its process group id.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        """Wrap asyncio process with psutil for PID-safe monitoring.

        Args:
            async_proc: asyncio subprocess.Process instance
        """
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                # Process already died or inaccessible
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        """Process stdout stream."""
        return self.async_proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        """Process stderr stream."""
        return self.async_proc.stderr

    async def wait(self) -> int:
        """Wait for the direct child to exit and return its exit code."""
        return await self.wait_with_timeout(None)

    async def wait_with_timeout(self, timeout: float | None) -> int:
        """Wait for the direct child to exit, with a timeout.

        asyncio's Process.wait() only returns once every pipe is closed as
        well, so a background grandchild holding stdout would keep it
        blocked. The returncode is set by the child watcher as soon as the
        direct child is reaped; poll that instead and leave the pipes to
        the caller's readers.

        Raises:
            TimeoutError: If process doesn't exit within timeout
        """
        async with asyncio.timeout(timeout):
            while (returncode := self.async_proc.returncode) is None:
                await asyncio.sleep(constants.PROCESS_EXIT_POLL_SECONDS)
            return returncode

    def _descendants(self) -> list[psutil.Process]:
        """Snapshot all descendants (children, grandchildren, ...)."""
        if self.psutil_proc is None:
            return []
        try:
            return self.psutil_proc.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def _signal_tree(self, sig: signal.Signals) -> None:
        """Send sig to the process group, then to any descendant that left it.

        Descendants are collected before the group is signalled: once the
        parent dies its children are re-parented and no longer discoverable.
        """
        descendants = self._descendants()
        if self.pid is not None:
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self.pid, sig)
            if self.async_proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    self.async_proc.send_signal(sig)
        for child in descendants:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.send_signal(sig)

    async def terminate_tree(self) -> None:
        """SIGTERM the process group and all descendants.

        Runs the blocking psutil walk in a thread so a slow /proc never
        stalls the event loop.
        """
        await asyncio.to_thread(self._signal_tree, signal.SIGTERM)

    async def kill_tree(self) -> None:
        """SIGKILL the process group and all descendants."""
        await asyncio.to_thread(self._signal_tree, signal.SIGKILL)
