"""Constants for guest-exec image layout, hardware profile and exit conventions."""

from typing import Final

# ============================================================================
# Disk images
# ============================================================================

DEFAULT_DISK_SIZE_MB: Final[int] = 3072
"""Size of the base root-filesystem image in MB (sparse, zero-filled)."""

MIN_DISK_SIZE_MB: Final[int] = 1
"""Smallest accepted base image size in MB."""

BOOTLOADER_FILENAME: Final[str] = "bootloader.bin"
"""Cached bootloader artifact name inside the cache directory."""

BOOTLOADER_BUILD_OUTPUT: Final[str] = "boot/bootloader.bios"
"""Path of the bootloader binary inside the installer's output tree."""

SEED_ARCHIVE_SUFFIX: Final[str] = ".tar"
"""Suffix of a prebuilt root tree in the cache directory (base.tar, gui.tar)."""

COPY_CHUNK_BYTES: Final[int] = 1024 * 1024
"""Read size when copying the data regions of a sparse image."""

PARTIAL_SUFFIX: Final[str] = ".partial"
"""Suffix for artifacts under construction. Never read as a finished artifact."""

BUILD_LOCK_FILENAME: Final[str] = "build.lock"
"""flock file serializing concurrent builders of the same cache directory."""

# ============================================================================
# Emulator hardware profile
# ============================================================================

DEFAULT_MEMORY_MB: Final[int] = 2048
"""Guest RAM in MB."""

DEFAULT_CPUS: Final[int] = 4
"""Number of virtual CPUs."""

MACHINE_TYPE: Final[str] = "q35"
"""Emulated chipset."""

DEFAULT_QEMU_BINARY: Final[str] = "qemu-system-x86_64"
"""Emulator executable name."""

# ============================================================================
# Debug-exit convention
# ============================================================================

DEBUG_EXIT_FACTOR: Final[int] = 2
"""The isa-debug-exit device reports (value * 2) + 1 as the emulator's exit code."""

CLEAN_SHUTDOWN_STATUS: Final[int] = 0
"""Emulator exit code when the guest powers off instead of using debug-exit."""

REDOXERD_SUCCESS_STATUS: Final[int] = 51
"""Emulator exit code when redoxerd reports that the payload succeeded."""

REDOXERD_FAILURE_STATUS: Final[int] = 53
"""Emulator exit code when redoxerd reports that the payload failed."""

INDETERMINATE_STATUS: Final[int] = -1
"""Decoded status when the guest result is unknown (emulator signalled or failed).
Outside 0-255 so it can never be mistaken for a real guest exit code."""

# ============================================================================
# Guest-visible layout
# ============================================================================

GUEST_BIN_DIR: Final[str] = "bin"
"""Directory (relative to guest root) receiving the payload executable."""

GUEST_MANIFEST_PATH: Final[str] = "etc/redoxerd"
"""Argument manifest read by the guest runner daemon (relative to guest root)."""

GUEST_FOLDER_DIR: Final[str] = "root"
"""Directory (relative to guest root) receiving an injected folder."""

GUEST_FOLDER_MOUNTPOINT: Final[str] = "/root"
"""Absolute guest path of GUEST_FOLDER_DIR, used when rewriting arguments."""

# ============================================================================
# Captured log
# ============================================================================

LOG_START_SENTINEL: Final[str] = "<guest-exec>"
"""Line a bracketing guest runner emits immediately before payload output.
redoxerd does not bracket; its log is the payload output verbatim."""

LOG_END_SENTINEL: Final[str] = "</guest-exec>"
"""Line a bracketing guest runner emits immediately after payload output."""

# ============================================================================
# Mounting
# ============================================================================

DEFAULT_MOUNT_TABLE: Final[str] = "/proc/self/mounts"
"""Host mount table (fstab format)."""

DEFAULT_FUSE_DEVICE: Final[str] = "/dev/fuse"
"""Kernel FUSE device the mount daemon opens."""

DEFAULT_MOUNT_FSTYPE_PREFIX: Final[str] = "fuse"
"""Mount type prefix of mounts created by the FUSE daemon (fuse, fuse.redoxfs)."""

MOUNT_TIMEOUT_SECONDS: Final[float] = 30.0
"""Upper bound on waiting for the daemon's mount to appear."""

UNMOUNT_TIMEOUT_SECONDS: Final[float] = 5.0
"""Upper bound on waiting for the mount to disappear after an unmount request."""

POLL_INTERVAL_SECONDS: Final[float] = 0.01
"""Mount-table poll cadence."""

DAEMON_EXIT_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period for the daemon to exit on its own after unmount before SIGTERM."""

# ============================================================================
# Diagnostics
# ============================================================================

TOOL_STDERR_MAX_BYTES: Final[int] = 2000
"""Maximum bytes of a failing tool's stderr kept in error context."""
