"""Host OS detection, default directories and PID-reuse safe process handling."""

import asyncio
import contextlib
import os
import tempfile
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil

APP_DIR_NAME = "guest-exec"


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM + FUSE available)."""

    MACOS = auto()
    """macOS (no KVM, software emulation only)."""

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


def get_cache_dir() -> Path:
    """Directory for durable artifacts (bootloader, base images).

    Priority order:
    1) ``XDG_CACHE_HOME`` on Linux
    2) ``~/Library/Caches`` on macOS
    3) ``~/.cache``
    """
    if detect_host_os() == HostOS.MACOS:
        return Path.home() / "Library" / "Caches" / APP_DIR_NAME
    xdg_cache_home = os.environ.get("XDG_CACHE_HOME")
    if xdg_cache_home:
        return Path(xdg_cache_home).expanduser() / APP_DIR_NAME
    return Path.home() / ".cache" / APP_DIR_NAME


def get_work_dir() -> Path:
    """Root directory for per-run workspaces."""
    return Path(tempfile.gettempdir()) / APP_DIR_NAME


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process for liveness checks
    that are not fooled by a recycled PID or by an unreaped zombie.
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe, zombies count as dead).

        Runs the blocking psutil calls in a thread so a hung /proc read
        cannot stall the event loop.
        """
        if self.async_proc.returncode is not None:
            return False
        if not self.psutil_proc:
            return True

        def _alive(proc: psutil.Process) -> bool:
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE

        try:
            return await asyncio.to_thread(_alive, self.psutil_proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @property
    def pid(self) -> int | None:
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def wait(self) -> int:
        return await self.async_proc.wait()

    @property
    def stdout(self):
        return self.async_proc.stdout

    @property
    def stderr(self):
        return self.async_proc.stderr

    async def terminate(self) -> None:
        """Send SIGTERM without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)
        else:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.terminate()

    async def kill(self) -> None:
        """Send SIGKILL without blocking the event loop."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)
        else:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit. Piped output must be drained by the caller.

        Raises:
            TimeoutError: If the process doesn't exit within timeout
        """
        return await asyncio.wait_for(self.wait(), timeout=timeout)
