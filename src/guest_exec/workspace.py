"""Per-run workspace: working image copy, mount directory and debug log.

Usage:
    async with await Workspace.create(settings, mount_controller) as workspace:
        await workspace.populate(base_image, payload, injector)
        raw_status = await runner.run(workspace.paths, accel)
    # teardown has run: nothing of the run remains on disk

Teardown runs exactly once on every exit path, including errors raised inside
the block and task cancellation (SIGINT/SIGTERM via the harness).
"""

from __future__ import annotations

import asyncio
import errno
import os
import uuid
from typing import TYPE_CHECKING, Self

import aiofiles.os

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.models import WorkspacePaths
from guest_exec.resource_cleanup import cleanup_dir, cleanup_file

if TYPE_CHECKING:
    from pathlib import Path

    from guest_exec.models import GuestPayload
    from guest_exec.mount_controller import MountController
    from guest_exec.payload import PayloadInjector
    from guest_exec.settings import Settings

logger = get_logger(__name__)


def copy_sparse(source: Path, dest: Path) -> None:
    """Copy ``source`` to ``dest``, writing only the source's data regions.

    Holes stay holes, so the copy occupies only the blocks the source
    uses. Filesystems without
    SEEK_DATA support report the whole file as data, which degrades to a
    plain copy.
    """
    with source.open("rb", buffering=0) as src, dest.open("wb", buffering=0) as dst:
        src_fd, dst_fd = src.fileno(), dst.fileno()
        size = os.fstat(src_fd).st_size
        offset = 0
        while offset < size:
            try:
                data_start = os.lseek(src_fd, offset, os.SEEK_DATA)
            except OSError as e:
                if e.errno == errno.ENXIO:  # only a trailing hole is left
                    break
                raise
            data_end = os.lseek(src_fd, data_start, os.SEEK_HOLE)
            position = data_start
            while position < data_end:
                chunk = os.pread(src_fd, min(constants.COPY_CHUNK_BYTES, data_end - position), position)
                if not chunk:
                    break
                position += os.pwrite(dst_fd, chunk, position)
            offset = data_end
        os.ftruncate(dst_fd, size)


class Workspace:
    """Ephemeral resources of one run, derived from a fresh run id."""

    def __init__(self, paths: WorkspacePaths, mount_controller: MountController) -> None:
        self.paths = paths
        self.mount_controller = mount_controller
        self._torn_down = False

    @property
    def run_id(self) -> str:
        return self.paths.run_id

    @classmethod
    async def create(
        cls,
        settings: Settings,
        mount_controller: MountController,
        run_id: str | None = None,
    ) -> Self:
        """Derive the run's paths and clear anything a crashed run left there.

        Raises:
            UnmountFailure: A leftover mount on the derived directory could not be removed
        """
        run_id = run_id or uuid.uuid4().hex
        paths = WorkspacePaths.derive(settings.work_dir, run_id)
        await aiofiles.os.makedirs(settings.work_dir, exist_ok=True)

        workspace = cls(paths, mount_controller)
        await workspace._purge()
        logger.debug(
            "Workspace created",
            extra={"run_id": run_id, "working_image": str(paths.working_image), "mount_dir": str(paths.mount_dir)},
        )
        return workspace

    async def populate(self, base_image: Path, payload: GuestPayload, injector: PayloadInjector) -> None:
        """Copy the base image, inject the payload, and unmount again.

        The image is always unmounted before this returns, so the emulator
        never sees a filesystem the host is still writing.

        Raises:
            PayloadError: Payload could not be injected
            MountFailure: Working image could not be mounted
            UnmountFailure: Working image stayed mounted
        """
        logger.info("Preparing working image", extra={"run_id": self.run_id, "base_image": str(base_image)})
        await asyncio.to_thread(copy_sparse, base_image, self.paths.working_image)
        await aiofiles.os.makedirs(self.paths.mount_dir, exist_ok=True)

        await self.mount_controller.mount(self.paths.working_image, self.paths.mount_dir)
        try:
            await injector.inject(payload, self.paths.mount_dir)
        finally:
            await asyncio.shield(self.mount_controller.unmount(self.paths.mount_dir))
        logger.debug("Workspace populated", extra={"run_id": self.run_id})

    async def teardown(self) -> None:
        """Unmount and delete every workspace path. Runs at most once.

        The mount directory is only deleted once it is confirmed unmounted;
        deleting a live mount point would delete the image contents instead.

        Raises:
            UnmountFailure: The mount directory is still mounted. It is left in place.
        """
        if self._torn_down:
            return
        self._torn_down = True

        logger.debug("Tearing down workspace", extra={"run_id": self.run_id})
        try:
            await self.mount_controller.unmount(self.paths.mount_dir)
        finally:
            await cleanup_file(self.paths.working_image, self.run_id, "working image")
            await cleanup_file(self.paths.log_file, self.run_id, "debug log")
        await cleanup_dir(self.paths.mount_dir, self.run_id, "mount directory")

    async def _purge(self) -> None:
        await self.mount_controller.unmount(self.paths.mount_dir)
        await cleanup_file(self.paths.working_image, self.run_id, "stale working image")
        await cleanup_file(self.paths.log_file, self.run_id, "stale debug log")
        await cleanup_dir(self.paths.mount_dir, self.run_id, "stale mount directory")

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: object,
    ) -> None:
        """Exit async context manager - always tear down."""
        await asyncio.shield(self.teardown())
