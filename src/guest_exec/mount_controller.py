"""Loopback filesystem mounts through a FUSE daemon.

The daemon establishes the mount asynchronously after it is spawned, so
there is no synchronous "mounted" signal. MountController polls the host
mount table instead, and bounds every wait:

- mount:   until the directory appears, the daemon dies, or mount_timeout_seconds
- unmount: until the directory disappears, or unmount_timeout_seconds

State per directory (MountState):

    UNMOUNTED ──mount()──> MOUNTING ──confirmed──> MOUNTED ──unmount()──> UNMOUNTED
                              │                       │
                              └──daemon died──> FAILED <──still mounted──┘
                                                  │
                                                  └──unmount() confirmed──> UNMOUNTED
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from dataclasses import dataclass
from pathlib import Path

import aiofiles
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_fixed

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.exceptions import InvalidStateTransition, MountFailure, UnmountFailure
from guest_exec.models import VALID_MOUNT_TRANSITIONS, MountState
from guest_exec.platform_utils import ProcessWrapper
from guest_exec.resource_cleanup import cleanup_process
from guest_exec.settings import Settings
from guest_exec.subprocess_utils import drain_subprocess_output, run_command, wait_for_condition

logger = get_logger(__name__)

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True, slots=True)
class MountEntry:
    """One line of the host mount table."""

    source: str
    target: Path
    fstype: str


def _unescape_mount_field(field: str) -> str:
    # The kernel escapes space, tab, newline and backslash as \ooo
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def parse_mount_table(text: str) -> list[MountEntry]:
    """Parse fstab-format mount table text (as found in /proc/self/mounts)."""
    entries: list[MountEntry] = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 3:
            continue
        entries.append(
            MountEntry(
                source=_unescape_mount_field(fields[0]),
                target=Path(_unescape_mount_field(fields[1])),
                fstype=fields[2],
            )
        )
    return entries


def canonical_dir(directory: Path) -> Path:
    """Resolve symlinks and relative parts; the mount table records resolved paths."""
    return directory.expanduser().resolve()


@dataclass
class _Daemon:
    process: ProcessWrapper
    log_task: asyncio.Task[None]


class MountController:
    """Mounts images on directories through the FUSE daemon and tracks their state.

    One controller may manage several directories, but each directory holds
    at most one mount. Only this class changes a directory's MountState.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._states: dict[Path, MountState] = {}
        self._daemons: dict[Path, _Daemon] = {}

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def state(self, directory: Path) -> MountState:
        """Current state of ``directory`` (UNMOUNTED if never seen)."""
        return self._states.get(canonical_dir(directory), MountState.UNMOUNTED)

    def _transition(self, directory: Path, new_state: MountState) -> None:
        old_state = self._states.get(directory, MountState.UNMOUNTED)
        if old_state == new_state:
            return
        if new_state not in VALID_MOUNT_TRANSITIONS[old_state]:
            raise InvalidStateTransition(
                f"Invalid mount state transition: {old_state.value} -> {new_state.value}",
                context={
                    "directory": str(directory),
                    "current_state": old_state.value,
                    "target_state": new_state.value,
                    "allowed_transitions": sorted(s.value for s in VALID_MOUNT_TRANSITIONS[old_state]),
                },
            )
        self._states[directory] = new_state
        logger.debug(
            "Mount state transition",
            extra={"directory": str(directory), "old_state": old_state.value, "new_state": new_state.value},
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def read_mount_table(self) -> list[MountEntry]:
        async with aiofiles.open(self.settings.mount_table) as f:
            return parse_mount_table(await f.read())

    def _is_daemon_mount(self, entry: MountEntry) -> bool:
        prefix = self.settings.mount_fstype_prefix
        return entry.fstype == prefix or entry.fstype.startswith(f"{prefix}.")

    async def is_mounted(self, directory: Path) -> bool:
        """Whether the mount table shows a daemon mount on ``directory``."""
        target = canonical_dir(directory)
        return any(entry.target == target and self._is_daemon_mount(entry) for entry in await self.read_mount_table())

    # -------------------------------------------------------------------------
    # Mount
    # -------------------------------------------------------------------------

    async def mount(self, image: Path, directory: Path) -> None:
        """Mount ``image`` on ``directory`` and wait until the mount is live.

        Any existing mount on the directory (e.g. left by a crashed run) is
        unmounted first.

        Raises:
            UnmountFailure: A leftover mount could not be removed
            MountFailure: The daemon exited or the mount did not appear in time
        """
        directory.mkdir(parents=True, exist_ok=True)
        target = canonical_dir(directory)
        context_id = target.name

        await self.unmount(target)

        self._transition(target, MountState.MOUNTING)
        logger.info("Mounting image", extra={"image": str(image), "directory": str(target)})

        try:
            proc = ProcessWrapper(
                await asyncio.create_subprocess_exec(
                    self.settings.mount_binary,
                    str(image),
                    str(target),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
            )
        except OSError as e:
            self._transition(target, MountState.FAILED)
            raise MountFailure(
                f"Failed to start mount daemon {self.settings.mount_binary}: {e}",
                context={"image": str(image), "directory": str(target)},
            ) from e

        log_task = asyncio.create_task(
            drain_subprocess_output(proc, process_name=self.settings.mount_binary, context_id=context_id)
        )
        self._daemons[target] = _Daemon(process=proc, log_task=log_task)

        async def abort_if_daemon_exited() -> None:
            if not await proc.is_running():
                # A zombie is not reaped yet; collect its exit code for the error
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(proc.wait(), timeout=constants.DAEMON_EXIT_TIMEOUT_SECONDS)
                raise MountFailure(
                    "Mount daemon exited before the mount was established",
                    context={"image": str(image), "directory": str(target), "returncode": proc.returncode},
                )

        try:
            await wait_for_condition(
                lambda: self.is_mounted(target),
                timeout=self.settings.mount_timeout_seconds,
                poll_interval=self.settings.poll_interval_seconds,
                abort_check=abort_if_daemon_exited,
            )
        except (MountFailure, TimeoutError) as e:
            self._transition(target, MountState.FAILED)
            await self._stop_daemon(target)
            await self._defensive_unmount(target)
            if isinstance(e, MountFailure):
                raise
            raise MountFailure(
                f"Mount not confirmed within {self.settings.mount_timeout_seconds}s",
                context={"image": str(image), "directory": str(target)},
            ) from e
        except BaseException:
            # Cancelled while waiting: take the daemon down with us
            self._transition(target, MountState.FAILED)
            await asyncio.shield(self._stop_daemon(target))
            raise

        self._transition(target, MountState.MOUNTED)
        logger.debug("Mount confirmed", extra={"directory": str(target), "pid": proc.pid})

    async def _defensive_unmount(self, target: Path) -> None:
        try:
            await self.unmount(target)
        except UnmountFailure as e:
            logger.error(
                "Defensive unmount after failed mount did not succeed",
                extra={"directory": str(target), "error": e.message},
            )

    # -------------------------------------------------------------------------
    # Unmount
    # -------------------------------------------------------------------------

    async def unmount(self, directory: Path) -> None:
        """Unmount ``directory`` if mounted, and confirm it is gone.

        Tolerates a directory that is not mounted.

        Raises:
            UnmountFailure: Still mounted after unmount_timeout_seconds.
                The directory stays FAILED and must not be reused.
        """
        target = canonical_dir(directory)

        if await self.is_mounted(target):
            if self.state(target) == MountState.UNMOUNTED:
                logger.warning("Found stale mount, unmounting", extra={"directory": str(target)})
                self._transition(target, MountState.MOUNTED)

            logger.debug("Unmounting", extra={"directory": str(target)})
            request_error: UnmountFailure | None = None
            try:
                await run_command(
                    [self.settings.unmount_binary, "-u", target],
                    error_cls=UnmountFailure,
                    description=f"unmount {target}",
                    context_id=target.name,
                )
            except UnmountFailure as e:
                request_error = e
                logger.warning("Unmount request failed", extra={"directory": str(target), "error": e.message})

            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_delay(self.settings.unmount_timeout_seconds),
                    wait=wait_fixed(self.settings.poll_interval_seconds),
                    retry=retry_if_exception_type(UnmountFailure),
                    reraise=True,
                ):
                    with attempt:
                        if await self.is_mounted(target):
                            raise UnmountFailure(
                                f"Directory still mounted after unmount request: {target}",
                                context={
                                    "directory": str(target),
                                    "request_error": request_error.context if request_error else None,
                                },
                            )
            except UnmountFailure:
                self._transition(target, MountState.FAILED)
                raise

        if self.state(target) != MountState.UNMOUNTED:
            self._transition(target, MountState.UNMOUNTED)
        await self._stop_daemon(target, graceful=True)

    async def _stop_daemon(self, target: Path, *, graceful: bool = False) -> None:
        """Reap the daemon that served ``target``.

        After a successful unmount the daemon exits by itself; give it a
        moment before signalling it.
        """
        daemon = self._daemons.pop(target, None)
        if daemon is None:
            return

        if graceful:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(daemon.process.wait(), timeout=constants.DAEMON_EXIT_TIMEOUT_SECONDS)

        await cleanup_process(daemon.process, self.settings.mount_binary, target.name)
        with contextlib.suppress(TimeoutError, asyncio.CancelledError):
            await asyncio.wait_for(daemon.log_task, timeout=1.0)
