"""guest-exec: Run a program inside a fresh, throwaway guest OS.

Each run boots a copy of a cached base image in QEMU, with the program and
its arguments injected into the guest filesystem. The program's outcome is
recovered through the emulator's debug-exit device (pass or fail with the
bundled redoxerd runner) and its output through the debug console.
Everything created for the run is deleted afterwards.

Quick Start:
    ```python
    from pathlib import Path
    from guest_exec import GuestPayload, run_payload

    result = await run_payload(GuestPayload(executable=Path("./hello"), arguments=("world",)))
    print(result.exit_status, result.log)
    ```

With Configuration:
    ```python
    from guest_exec import Settings

    settings = Settings(memory_mb=4096, require_kvm=True)
    result = await run_payload(payload, settings)
    ```

Requirements:
    - QEMU (qemu-system-x86_64), KVM recommended
    - redoxfs (FUSE mount daemon) and fusermount
    - redox_installer and redoxfs-mkfs for the first build of the cached images
    - Python 3.12+
"""

from guest_exec.exceptions import (
    BuildError,
    DependencyError,
    EmulatorError,
    GuestExecError,
    InvalidStateTransition,
    MountFailure,
    PayloadError,
    PermanentError,
    RunInterrupted,
    TransientError,
    UnmountFailure,
)
from guest_exec.harness import run_interruptible, run_payload
from guest_exec.image_catalog import ImageCatalog
from guest_exec.models import ExitConvention, GuestPayload, MountState, RunResult, WorkspacePaths
from guest_exec.mount_controller import MountController
from guest_exec.payload import PayloadInjector
from guest_exec.reporter import ResultReporter
from guest_exec.settings import Settings
from guest_exec.vm_runner import VmRunner, decode_exit_status
from guest_exec.workspace import Workspace

__all__ = [
    "BuildError",
    "DependencyError",
    "EmulatorError",
    "ExitConvention",
    "GuestExecError",
    "GuestPayload",
    "ImageCatalog",
    "InvalidStateTransition",
    "MountController",
    "MountFailure",
    "MountState",
    "PayloadError",
    "PayloadInjector",
    "PermanentError",
    "ResultReporter",
    "RunInterrupted",
    "RunResult",
    "Settings",
    "TransientError",
    "UnmountFailure",
    "VmRunner",
    "Workspace",
    "WorkspacePaths",
    "decode_exit_status",
    "run_interruptible",
    "run_payload",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("guest-exec")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
