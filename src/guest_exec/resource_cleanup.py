"""Resource cleanup utilities for run lifecycle management.

Best-effort cleanup operations that log errors but never raise.
Used on every exit path, including error and cancellation paths, where a
second exception would hide the first.
"""

import asyncio
import shutil
from pathlib import Path

import aiofiles.os

from guest_exec._logging import get_logger
from guest_exec.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = 3.0,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop a helper process with SIGTERM, escalating to SIGKILL if it lingers.

    The child is always reaped. Never raises.

    Args:
        proc: Process to stop (None is accepted and ignored)
        name: Tool name for logging (e.g. "redoxfs", "qemu")
        context_id: Run id or image variant for log correlation
        term_timeout: Seconds to wait after SIGTERM
        kill_timeout: Seconds to wait after SIGKILL

    Returns:
        True once the process has exited, False if it outlived SIGKILL
    """
    if proc is None or proc.returncode is not None:
        return True

    steps = (("SIGTERM", proc.terminate, term_timeout), ("SIGKILL", proc.kill, kill_timeout))
    try:
        for signame, send, timeout in steps:
            logger.debug(f"Sending {signame} to {name}", extra={"context_id": context_id, "pid": proc.pid})
            await send()
            try:
                await proc.wait_with_timeout(timeout=timeout)
            except TimeoutError:
                logger.warning(
                    f"{name} still running {timeout}s after {signame}",
                    extra={"context_id": context_id, "pid": proc.pid},
                )
                continue
            logger.debug(
                f"{name} exited after {signame}",
                extra={"context_id": context_id, "returncode": proc.returncode},
            )
            return True
    except ProcessLookupError:
        return True
    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False

    logger.error(f"{name} survived SIGKILL", extra={"context_id": context_id, "pid": proc.pid})
    return False


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete file. Silently succeeds if it doesn't exist.

    Args:
        file_path: Path to file to delete (None safe - returns immediately)
        context_id: Context for logging (e.g., run id)
        description: Description for logging (e.g., "working image", "log")

    Returns:
        True if file cleaned successfully, False if issues occurred
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} deleted",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False


async def cleanup_dir(
    dir_path: Path | None,
    context_id: str,
    description: str = "directory",
) -> bool:
    """Recursively delete directory. Silently succeeds if it doesn't exist.

    Must only be called on a directory that is known not to be a live mount
    point, otherwise the mounted filesystem's contents are deleted.

    Returns:
        True if directory cleaned successfully, False if issues occurred
    """
    if dir_path is None:
        return True

    try:
        await asyncio.to_thread(shutil.rmtree, dir_path)
        logger.debug(
            f"{description} deleted",
            extra={"context_id": context_id, "path": str(dir_path)},
        )
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"context_id": context_id, "path": str(dir_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
