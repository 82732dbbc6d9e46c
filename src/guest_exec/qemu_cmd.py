"""QEMU command line builder for guest runs.

Builds the fixed hardware profile (CPU, machine, memory, network, boot disk,
debug console, debug-exit device) and merges user-supplied overrides.
"""

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.models import WorkspacePaths
from guest_exec.settings import Settings
from guest_exec.system_probes import AccelType

logger = get_logger(__name__)


def default_qemu_args(settings: Settings, paths: WorkspacePaths, accel: AccelType) -> list[str]:
    """Default emulator arguments, as flag/value pairs or bare flags."""
    # fmt: off
    args = [
        "-cpu", "max",
        "-machine", constants.MACHINE_TYPE,
        "-m", str(settings.memory_mb),
        "-smp", str(settings.cpus),
        # Guest console on the operator's terminal, QEMU monitor multiplexed (Ctrl-A c)
        "-serial", "mon:stdio",
        # Debug console (port 0xe9) captured to the run log
        "-chardev", f"file,id=log,path={paths.log_file}",
        "-netdev", "user,id=net0",
        "-device", "isa-debugcon,chardev=log",
        "-device", "isa-debug-exit",
        "-device", "e1000,netdev=net0",
        "-drive", f"file={paths.working_image},format=raw",
    ]
    # fmt: on
    if accel == AccelType.KVM:
        args += ["-accel", "kvm"]
    if not settings.gui:
        args += ["-nographic", "-vga", "none"]
    return args


def merge_qemu_args(defaults: list[str], user_args: list[str] | None) -> list[str]:
    """Merge user arguments over the defaults.

    Every flag the user passes removes all default occurrences of that flag
    together with its value, e.g. ``-m 4096`` replaces ``-m 2048`` and a
    single ``-device virtio-rng-pci`` drops every default ``-device``. The
    remaining defaults come first, then the user arguments verbatim.
    """
    if user_args is None:
        return list(defaults)

    user_flags = {arg for arg in user_args if arg.startswith("-")}
    merged: list[str] = []
    i = 0
    while i < len(defaults):
        flag = defaults[i]
        has_value = i + 1 < len(defaults) and not defaults[i + 1].startswith("-")
        if flag not in user_flags:
            merged.append(flag)
            if has_value:
                merged.append(defaults[i + 1])
        i += 2 if has_value else 1

    merged.extend(user_args)
    return merged


def build_qemu_cmd(settings: Settings, paths: WorkspacePaths, accel: AccelType) -> list[str]:
    """Build the full emulator command for one run.

    Args:
        settings: Emulator binary, hardware profile and user overrides
        paths: Workspace whose working image boots and whose log receives debug output
        accel: Accelerator chosen by preflight

    Returns:
        QEMU command as list of strings
    """
    user_args = settings.qemu_user_args()
    args = merge_qemu_args(default_qemu_args(settings, paths, accel), user_args)
    if user_args:
        logger.debug("Applied user emulator arguments", extra={"run_id": paths.run_id, "qemu_args": user_args})
    return [settings.qemu_binary, *args]
