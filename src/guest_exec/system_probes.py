"""Host capability probes: hardware acceleration and required tools.

Probes run once per process and cache their results. The preflight check is
meant to run before any expensive image work so a missing capability fails
fast.
"""

import asyncio
import os
import shutil
from enum import Enum

import aiofiles.os

from guest_exec._logging import get_logger
from guest_exec.exceptions import DependencyError
from guest_exec.platform_utils import HostOS, detect_host_os
from guest_exec.settings import Settings

logger = get_logger(__name__)

_KVM_DEVICE = "/dev/kvm"


class AccelType(str, Enum):
    """Emulator acceleration backends."""

    KVM = "kvm"
    TCG = "tcg"


class _ProbeCache:
    """Container for cached probe results.

    The lock is created lazily so it binds to the running event loop.
    """

    __slots__ = ("_lock", "kvm", "qemu_accels")

    def __init__(self) -> None:
        self.kvm: bool | None = None
        self.qemu_accels: dict[str, set[str]] = {}
        self._lock: asyncio.Lock | None = None

    def get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def reset(self) -> None:
        self.kvm = None
        self.qemu_accels.clear()
        self._lock = None


_probe_cache = _ProbeCache()


async def probe_qemu_accelerators(qemu_binary: str) -> set[str]:
    """Ask the emulator which accelerators it was built with (cached per binary).

    Parses ``<qemu> -accel help``. Returns an empty set if the probe fails.
    """
    if qemu_binary in _probe_cache.qemu_accels:
        return _probe_cache.qemu_accels[qemu_binary]

    accels: set[str] = set()
    try:
        proc = await asyncio.create_subprocess_exec(
            qemu_binary,
            "-accel",
            "help",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=5)
        if proc.returncode == 0:
            # "Accelerators supported in QEMU binary:\ntcg\nkvm\n"
            for raw_line in stdout.decode(errors="replace").splitlines():
                name = raw_line.strip().lower()
                if name and " " not in name and not name.endswith(":"):
                    accels.add(name)
        else:
            logger.warning(
                "Emulator accelerator probe failed",
                extra={"qemu_binary": qemu_binary, "returncode": proc.returncode},
            )
    except (OSError, TimeoutError) as e:
        logger.debug("Emulator accelerator probe failed", extra={"qemu_binary": qemu_binary, "error": str(e)})

    _probe_cache.qemu_accels[qemu_binary] = accels
    return accels


async def check_kvm_available(qemu_binary: str) -> bool:
    """Check KVM is usable: device present, read/write accessible, and built into the emulator (cached)."""
    if _probe_cache.kvm is not None:
        return _probe_cache.kvm

    async with _probe_cache.get_lock():
        if _probe_cache.kvm is not None:
            return _probe_cache.kvm

        available = False
        if detect_host_os() != HostOS.LINUX:
            logger.debug("KVM not available: host is not Linux")
        elif not await aiofiles.os.path.exists(_KVM_DEVICE):
            logger.debug("KVM not available: /dev/kvm does not exist")
        elif not await aiofiles.os.access(_KVM_DEVICE, os.R_OK | os.W_OK):
            logger.debug("KVM not available: permission denied on /dev/kvm")
        elif "kvm" not in await probe_qemu_accelerators(qemu_binary):
            logger.warning("KVM not available: emulator binary does not support the kvm accelerator")
        else:
            available = True

        _probe_cache.kvm = available
        return available


async def detect_accel_type(settings: Settings) -> AccelType:
    """Accelerator the emulator should use for this host and configuration."""
    if settings.force_emulation:
        return AccelType.TCG
    if await check_kvm_available(settings.qemu_binary):
        return AccelType.KVM
    return AccelType.TCG


def find_binary(name: str) -> str | None:
    """Resolve a tool name (or explicit path) to an executable path."""
    return shutil.which(name)


async def check_fuse_available(settings: Settings) -> bool:
    """Whether the mount daemon can reach FUSE.

    Only Linux exposes a fixed device node; elsewhere the daemon reports
    FUSE problems itself when it fails to mount.
    """
    if detect_host_os() != HostOS.LINUX:
        return True
    return await aiofiles.os.path.exists(settings.fuse_device)


async def preflight(settings: Settings, *, needs_build: bool, seeded: bool = False) -> AccelType:
    """Verify host prerequisites before any image or workspace work.

    Args:
        settings: Runtime configuration
        needs_build: Whether a cached artifact is missing, so the installer
            and formatter are required too
        seeded: Whether the base image build extracts a prebuilt archive,
            so tar is required too

    Returns:
        The accelerator the emulator will use

    Raises:
        DependencyError: A required tool or FUSE is missing, or KVM is required but unavailable
    """
    required = [settings.qemu_binary, settings.mount_binary, settings.unmount_binary]
    if needs_build:
        required += [settings.installer_binary, settings.mkfs_binary]
    if seeded:
        required.append(settings.tar_binary)

    missing = [name for name in required if find_binary(name) is None]
    if missing:
        raise DependencyError(
            f"Required tools not found: {', '.join(missing)}",
            context={"missing": missing},
        )

    if not await check_fuse_available(settings):
        raise DependencyError(
            f"FUSE is not available ({settings.fuse_device} missing); images cannot be mounted",
            context={"fuse_device": str(settings.fuse_device)},
        )

    accel = await detect_accel_type(settings)
    if settings.require_kvm and accel != AccelType.KVM:
        raise DependencyError(
            "KVM acceleration is required but not available",
            context={"kvm_device": _KVM_DEVICE, "force_emulation": settings.force_emulation},
        )
    if accel == AccelType.TCG:
        logger.warning("Using TCG software emulation (slow) - KVM not available")
    return accel
