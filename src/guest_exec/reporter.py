"""Turn a finished run's debug log and emulator status into a RunResult."""

import aiofiles

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.models import ExitConvention, RunResult, WorkspacePaths
from guest_exec.vm_runner import decode_exit_status

logger = get_logger(__name__)


def extract_guest_output(log: str) -> str:
    """Return the payload's output from the full debug log.

    A runner that prints LOG_START_SENTINEL and LOG_END_SENTINEL on their own
    lines around the payload's output gets boot diagnostics outside them
    dropped. A log without a start sentinel (redoxerd never prints one) is
    returned unchanged. A missing end sentinel (guest died mid-run) keeps
    everything after the start.
    """
    lines = log.splitlines(keepends=True)
    start = next((i for i, line in enumerate(lines) if line.strip() == constants.LOG_START_SENTINEL), None)
    if start is None:
        return log

    body = lines[start + 1 :]
    end = next((i for i, line in enumerate(body) if line.strip() == constants.LOG_END_SENTINEL), None)
    if end is not None:
        body = body[:end]
    return "".join(body)


class ResultReporter:
    """Builds the RunResult from the workspace log. Must run before teardown."""

    def __init__(self, convention: ExitConvention = ExitConvention.STATUS) -> None:
        self.convention = convention

    async def report(self, paths: WorkspacePaths, raw_status: int) -> RunResult:
        try:
            async with aiofiles.open(paths.log_file, encoding="utf-8", errors="replace") as f:
                log = await f.read()
        except FileNotFoundError:
            # Emulator exited before opening the debug console
            logger.warning("No debug log produced", extra={"run_id": paths.run_id, "path": str(paths.log_file)})
            log = ""

        result = RunResult(
            exit_status=decode_exit_status(raw_status, self.convention),
            log=extract_guest_output(log),
            raw_status=raw_status,
        )
        logger.debug(
            "Run result",
            extra={"run_id": paths.run_id, "exit_status": result.exit_status, "log_bytes": len(result.log)},
        )
        return result
