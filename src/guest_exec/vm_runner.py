"""Launch the emulator on a populated workspace and decode the guest's status.

Debug-exit convention: when the guest writes value ``v`` to the
isa-debug-exit port, QEMU exits with ``(v << 1) | 1``. A guest that powers
off normally makes QEMU exit 0. Anything else (even codes are QEMU's own
errors, negative codes are signals) leaves the guest result unknown.

What ``v`` means depends on the guest runner. redoxerd only reports pass or
fail (QEMU exits 51 or 53); a status-reporting runner writes the payload's
own exit status.
"""

import asyncio

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.exceptions import EmulatorError
from guest_exec.models import ExitConvention, WorkspacePaths
from guest_exec.platform_utils import ProcessWrapper
from guest_exec.qemu_cmd import build_qemu_cmd
from guest_exec.resource_cleanup import cleanup_process
from guest_exec.settings import Settings
from guest_exec.system_probes import AccelType

logger = get_logger(__name__)

_REDOXERD_STATUSES = {
    constants.CLEAN_SHUTDOWN_STATUS: 0,
    constants.REDOXERD_SUCCESS_STATUS: 0,
    constants.REDOXERD_FAILURE_STATUS: 1,
}


def decode_exit_status(raw_status: int, convention: ExitConvention = ExitConvention.STATUS) -> int:
    """Recover the guest's exit status from the emulator's exit code.

    Args:
        raw_status: Emulator exit code (negative: killed by that signal)
        convention: What the guest runner writes to the debug-exit port

    Returns:
        Guest exit status, or INDETERMINATE_STATUS when the emulator was
        killed by a signal or failed on its own. Under the redoxerd
        convention the status is 0 (success) or 1 (failure).
    """
    if convention == ExitConvention.REDOXERD:
        return _REDOXERD_STATUSES.get(raw_status, constants.INDETERMINATE_STATUS)
    if raw_status == constants.CLEAN_SHUTDOWN_STATUS:
        return 0
    if raw_status < 0 or raw_status % constants.DEBUG_EXIT_FACTOR == 0:
        return constants.INDETERMINATE_STATUS
    return raw_status // constants.DEBUG_EXIT_FACTOR


class VmRunner:
    """Runs the emulator in the foreground until the guest stops it.

    No timeout is applied here; callers that need one wrap ``run`` in
    ``asyncio.timeout`` and the emulator is killed on cancellation.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def run(self, paths: WorkspacePaths, accel: AccelType) -> int:
        """Boot the working image and block until the emulator exits.

        The guest console is attached to this process's stdio; debug output
        goes to ``paths.log_file``.

        Returns:
            Raw emulator exit code (negative: killed by that signal)

        Raises:
            EmulatorError: Emulator could not be started
        """
        cmd = build_qemu_cmd(self.settings, paths, accel)
        logger.info(
            "Launching emulator",
            extra={"run_id": paths.run_id, "accel": accel.value, "qemu_binary": self.settings.qemu_binary},
        )
        logger.debug("Emulator command", extra={"run_id": paths.run_id, "cmd": cmd})

        try:
            proc = ProcessWrapper(await asyncio.create_subprocess_exec(*cmd))
        except OSError as e:
            raise EmulatorError(
                f"Failed to start emulator {self.settings.qemu_binary}: {e}",
                context={"run_id": paths.run_id, "cmd": cmd},
            ) from e

        try:
            raw_status = await proc.wait()
        except BaseException:
            await asyncio.shield(cleanup_process(proc, "qemu", paths.run_id))
            raise

        logger.info(
            "Emulator exited",
            extra={
                "run_id": paths.run_id,
                "raw_status": raw_status,
                "guest_status": decode_exit_status(raw_status, self.settings.exit_convention),
            },
        )
        return raw_status
