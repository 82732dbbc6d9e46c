"""Runtime configuration from environment variables."""

from importlib import resources
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from guest_exec import constants
from guest_exec.models import ExitConvention
from guest_exec.platform_utils import get_cache_dir, get_work_dir


def _bundled_manifest(name: str) -> Path:
    return Path(str(resources.files("guest_exec") / "manifests" / name))


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with GUEST_EXEC_ prefix.
    Example: GUEST_EXEC_QEMU_BINARY=/opt/qemu/bin/qemu-system-x86_64
    """

    model_config = SettingsConfigDict(
        env_prefix="GUEST_EXEC_",
        extra="ignore",
    )

    # Directories
    cache_dir: Path = Field(default_factory=get_cache_dir)
    work_dir: Path = Field(default_factory=get_work_dir)

    # Emulator
    qemu_binary: str = constants.DEFAULT_QEMU_BINARY
    qemu_args: str | None = None
    """Extra emulator arguments, space separated. Flags given here replace the defaults."""
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=128)
    cpus: int = Field(default=constants.DEFAULT_CPUS, ge=1, le=64)
    gui: bool = False
    force_emulation: bool = False
    """Never use KVM, even when available."""
    require_kvm: bool = False
    """Fail before any image work when KVM is unavailable."""
    exit_convention: ExitConvention = ExitConvention.REDOXERD
    """What the guest runner reports through the debug-exit device."""

    # Image build tools
    installer_binary: str = "redox_installer"
    mkfs_binary: str = "redoxfs-mkfs"
    disk_size_mb: int = Field(default=constants.DEFAULT_DISK_SIZE_MB, ge=constants.MIN_DISK_SIZE_MB)
    bootloader_manifest: Path = Field(default_factory=lambda: _bundled_manifest("bootloader.toml"))
    base_manifest: Path = Field(default_factory=lambda: _bundled_manifest("base.toml"))
    gui_manifest: Path = Field(default_factory=lambda: _bundled_manifest("gui.toml"))
    seed_archive: Path | None = None
    """Prebuilt root tree (tar) extracted into a new base image instead of running
    the installer. Defaults to <cache_dir>/<variant>.tar when that file exists."""
    tar_binary: str = "tar"

    # Mounting
    mount_binary: str = "redoxfs"
    unmount_binary: str = "fusermount"
    fuse_device: Path = Path(constants.DEFAULT_FUSE_DEVICE)
    """Checked before any image work on Linux; mounting needs FUSE."""
    mount_table: Path = Path(constants.DEFAULT_MOUNT_TABLE)
    mount_fstype_prefix: str = constants.DEFAULT_MOUNT_FSTYPE_PREFIX
    mount_timeout_seconds: float = Field(default=constants.MOUNT_TIMEOUT_SECONDS, gt=0)
    unmount_timeout_seconds: float = Field(default=constants.UNMOUNT_TIMEOUT_SECONDS, gt=0)
    poll_interval_seconds: float = Field(default=constants.POLL_INTERVAL_SECONDS, gt=0)

    @property
    def image_variant(self) -> str:
        """Name of the base image variant: "gui" or "base"."""
        return "gui" if self.gui else "base"

    @property
    def variant_manifest(self) -> Path:
        return self.gui_manifest if self.gui else self.base_manifest

    def qemu_user_args(self) -> list[str] | None:
        """Split qemu_args into tokens (None when unset)."""
        if self.qemu_args is None:
            return None
        return [arg for arg in self.qemu_args.split(" ") if arg]
