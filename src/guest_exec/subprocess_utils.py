"""Subprocess lifecycle utilities.

- drain_subprocess_output: concurrent stdout/stderr draining (prevents 64KB pipe deadlock)
- run_command: run a host tool to completion, converting failure into a chosen error
- wait_for_condition: poll for a state produced by another process, gated on its liveness
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import TYPE_CHECKING

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.exceptions import GuestExecError
from guest_exec.platform_utils import ProcessWrapper
from guest_exec.resource_cleanup import cleanup_process

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from os import PathLike

logger = get_logger(__name__)


async def drain_subprocess_output(
    process: ProcessWrapper,
    *,
    process_name: str,
    context_id: str,
    stdout_handler: Callable[[str], None] | None = None,
    stderr_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently to prevent 64KB pipe deadlock.

    The installer can print thousands of package lines; reading one pipe
    while the other fills would block it forever.

    Args:
        process: ProcessWrapper instance with stdout/stderr pipes
        process_name: Process identifier for logging (e.g., "installer")
        context_id: Context identifier (e.g., run id) for log correlation
        stdout_handler: Optional callback for stdout lines (default: debug log)
        stderr_handler: Optional callback for stderr lines (default: debug log)
    """
    if stdout_handler is None:

        def default_stdout_handler(line: str) -> None:
            logger.debug(f"[{process_name} stdout] {line}", extra={"context_id": context_id})

        stdout_handler = default_stdout_handler

    if stderr_handler is None:

        def default_stderr_handler(line: str) -> None:
            logger.debug(f"[{process_name} stderr] {line}", extra={"context_id": context_id})

        stderr_handler = default_stderr_handler

    async def read_stream(stream: asyncio.StreamReader, handler: Callable[[str], None]) -> None:
        async for line in stream:
            decoded = line.decode(errors="replace").rstrip()
            if decoded:
                handler(decoded)

    async with asyncio.TaskGroup() as tg:
        if process.stdout:
            tg.create_task(read_stream(process.stdout, stdout_handler))
        if process.stderr:
            tg.create_task(read_stream(process.stderr, stderr_handler))


async def run_command(
    cmd: Sequence[str | PathLike[str]],
    *,
    error_cls: type[GuestExecError],
    description: str,
    context_id: str,
) -> None:
    """Run a host tool to completion.

    Output is drained into the debug log. The tail of stderr is kept for the
    error context. The child is killed if the caller is cancelled.

    Args:
        cmd: Program and arguments
        error_cls: Exception raised on spawn failure or non-zero exit
        description: Human-readable step name for messages (e.g. "format base image")
        context_id: Context identifier for log correlation

    Raises:
        error_cls: The tool could not be started or exited non-zero
    """
    argv = [str(arg) for arg in cmd]
    stderr_tail: deque[str] = deque(maxlen=50)

    def keep_stderr(line: str) -> None:
        stderr_tail.append(line)
        logger.debug(f"[{argv[0]} stderr] {line}", extra={"context_id": context_id})

    logger.debug("Running command", extra={"context_id": context_id, "cmd": argv})
    try:
        proc = ProcessWrapper(
            await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        )
    except OSError as e:
        raise error_cls(
            f"Failed to {description}: cannot execute {argv[0]}: {e}",
            context={"context_id": context_id, "cmd": argv},
        ) from e

    try:
        await drain_subprocess_output(
            proc,
            process_name=argv[0],
            context_id=context_id,
            stderr_handler=keep_stderr,
        )
        returncode = await proc.wait()
    except BaseException:
        # Cancelled or interrupted: never leave the tool running behind us
        await asyncio.shield(cleanup_process(proc, argv[0], context_id))
        raise

    if returncode != 0:
        stderr_text = "\n".join(stderr_tail)[-constants.TOOL_STDERR_MAX_BYTES :]
        raise error_cls(
            f"Failed to {description}: {argv[0]} exited with status {returncode}",
            context={
                "context_id": context_id,
                "cmd": argv,
                "returncode": returncode,
                "stderr": stderr_text,
            },
        )


async def wait_for_condition(
    condition: Callable[[], Awaitable[bool]],
    *,
    timeout: float,
    poll_interval: float,
    abort_check: Callable[[], Awaitable[None]] | None = None,
) -> None:
    """Poll until ``condition`` returns True.

    Used when the state is produced by an external process and there is no
    event to await (e.g. a FUSE daemon adding an entry to the mount table).

    Args:
        condition: Async predicate polled every ``poll_interval`` seconds.
        timeout: Maximum seconds to wait before raising TimeoutError.
        poll_interval: Seconds between checks.
        abort_check: Optional coroutine function awaited each iteration before
            the condition. Should raise to abort early (e.g. the producing
            process has died).

    Raises:
        TimeoutError: Condition not met within ``timeout`` seconds.
    """
    async with asyncio.timeout(timeout):
        while not await condition():
            if abort_check is not None:
                await abort_check()
            await asyncio.sleep(poll_interval)
