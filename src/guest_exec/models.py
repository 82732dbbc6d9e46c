"""Data models for guest-exec."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from guest_exec.constants import INDETERMINATE_STATUS


class MountState(str, Enum):
    """Loopback mount state of one directory, owned by MountController."""

    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    FAILED = "failed"


VALID_MOUNT_TRANSITIONS: dict[MountState, set[MountState]] = {
    # UNMOUNTED -> MOUNTED adopts a stale mount left by a previous run
    MountState.UNMOUNTED: {MountState.MOUNTING, MountState.MOUNTED},
    MountState.MOUNTING: {MountState.MOUNTED, MountState.FAILED},
    MountState.MOUNTED: {MountState.UNMOUNTED, MountState.FAILED},
    MountState.FAILED: {MountState.UNMOUNTED},
}
"""Allowed transitions. Same-state updates are no-ops and never validated."""


class ExitConvention(str, Enum):
    """How the guest runner reports through the isa-debug-exit device."""

    REDOXERD = "redoxerd"
    """Pass/fail only: the runner writes 25 on success and 26 on failure."""
    STATUS = "status"
    """The runner writes the payload's own exit status."""


class GuestPayload(BaseModel):
    """Executable and ordered arguments to run inside the guest."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    executable: Path = Field(description="Host path of the executable to inject")
    arguments: tuple[str, ...] = Field(default=(), description="Arguments passed to the executable, in order")
    folder: Path | None = Field(default=None, description="Host folder whose contents are copied to the guest /root")

    @property
    def guest_name(self) -> str:
        """Name of the executable inside the guest bin directory."""
        return self.executable.name


class RunResult(BaseModel):
    """Outcome of one guest run."""

    model_config = ConfigDict(frozen=True)

    exit_status: int = Field(description="Decoded guest exit status, or INDETERMINATE_STATUS")
    log: str = Field(description="Captured guest output")
    raw_status: int | None = Field(default=None, description="Emulator exit code as reported by the host")

    @property
    def indeterminate(self) -> bool:
        """True when the emulator did not report a guest status (e.g. killed by a signal)."""
        return self.exit_status == INDETERMINATE_STATUS

    @property
    def success(self) -> bool:
        return self.exit_status == 0


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Per-run paths, all derived from one run identifier."""

    run_id: str
    working_image: Path
    mount_dir: Path
    log_file: Path

    @classmethod
    def derive(cls, work_dir: Path, run_id: str) -> "WorkspacePaths":
        """Derive the workspace paths for ``run_id`` under ``work_dir``.

        Deterministic: distinct run ids never share a path.
        """
        stem = f"run-{run_id}"
        return cls(
            run_id=run_id,
            working_image=work_dir / f"{stem}.bin",
            mount_dir=work_dir / stem,
            log_file=work_dir / f"{stem}.log",
        )

    def all_paths(self) -> tuple[Path, Path, Path]:
        return (self.working_image, self.mount_dir, self.log_file)
