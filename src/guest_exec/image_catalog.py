"""Cached bootloader and base images shared by every run.

Layout under ``cache_dir``::

    bootloader.bin              # bootloader binary, input to the formatter
    base.bin / gui.bin          # formatted, populated root filesystem per variant
    base.tar / gui.tar          # optional prebuilt root tree, extracted instead of installing
    build.lock                  # flock serializing builders across processes
    *.partial                   # under construction, never read as finished

An artifact is published only by renaming its ``.partial`` file, so a reader
either sees nothing or a complete artifact. A failed build leaves no file at
the final path and the next run rebuilds from scratch.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.exceptions import BuildError, GuestExecError
from guest_exec.resource_cleanup import cleanup_dir, cleanup_file
from guest_exec.subprocess_utils import run_command

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from guest_exec.mount_controller import MountController
    from guest_exec.settings import Settings

logger = get_logger(__name__)

_LOCK_POLL_INTERVAL_SECONDS = 0.1


class ImageCatalog:
    """Builds the bootloader and base image on first use, then reuses them.

    Usage:
        catalog = ImageCatalog(settings, mount_controller)
        base_image = await catalog.ensure_built()
    """

    def __init__(self, settings: Settings, mount_controller: MountController) -> None:
        self.settings = settings
        self.mount_controller = mount_controller
        self.cache_dir = settings.cache_dir

    @property
    def bootloader_path(self) -> Path:
        return self.cache_dir / constants.BOOTLOADER_FILENAME

    @property
    def base_image_path(self) -> Path:
        """Final path of the base image for the configured variant."""
        return self.cache_dir / f"{self.settings.image_variant}.bin"

    async def needs_build(self) -> bool:
        """Whether either artifact is missing (the build tools will be needed)."""
        return not (
            await aiofiles.os.path.exists(self.bootloader_path) and await aiofiles.os.path.exists(self.base_image_path)
        )

    async def seed_archive(self) -> Path | None:
        """Prebuilt root tree for the configured variant, if one is available.

        An explicitly configured archive must exist; the default
        ``<variant>.tar`` in the cache directory is used only when present.

        Raises:
            BuildError: The configured seed archive does not exist
        """
        configured = self.settings.seed_archive
        if configured is not None:
            if not await aiofiles.os.path.isfile(configured):
                raise BuildError(
                    f"Seed archive not found: {configured}",
                    context={"seed_archive": str(configured)},
                )
            return configured
        default = self.cache_dir / f"{self.settings.image_variant}{constants.SEED_ARCHIVE_SUFFIX}"
        return default if await aiofiles.os.path.isfile(default) else None

    async def ensure_built(self) -> Path:
        """Ensure both artifacts exist and return the base image path."""
        await self.ensure_bootloader()
        return await self.ensure_base_image()

    # -------------------------------------------------------------------------
    # Build lock
    # -------------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _build_lock(self) -> AsyncIterator[None]:
        """Hold an exclusive flock on ``build.lock`` for the duration of a build.

        Polls with LOCK_NB so a waiting builder stays cancellable.
        """
        await aiofiles.os.makedirs(self.cache_dir, exist_ok=True)
        lock_path = self.cache_dir / constants.BUILD_LOCK_FILENAME
        fd = lock_path.open("w")
        try:
            waited = False
            while True:
                try:
                    fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if not waited:
                        logger.info("Waiting for another build to finish", extra={"lock": str(lock_path)})
                        waited = True
                    await asyncio.sleep(_LOCK_POLL_INTERVAL_SECONDS)
            yield
        finally:
            fd.close()  # Closing fd releases the flock
            # Lock file is kept: unlinking it would let two builders lock different inodes

    # -------------------------------------------------------------------------
    # Bootloader
    # -------------------------------------------------------------------------

    async def ensure_bootloader(self) -> Path:
        """Build the bootloader if it is not cached.

        The installer writes a tree into a scratch directory; only its
        bootloader binary is kept.

        Raises:
            BuildError: The installer failed or produced no bootloader
        """
        final_path = self.bootloader_path
        if await aiofiles.os.path.exists(final_path):
            return final_path

        async with self._build_lock():
            # Another builder may have finished while we waited
            if await aiofiles.os.path.exists(final_path):
                return final_path

            logger.info("Building bootloader", extra={"path": str(final_path)})
            build_dir = self.cache_dir / f"bootloader{constants.PARTIAL_SUFFIX}"
            partial_path = final_path.with_name(final_path.name + constants.PARTIAL_SUFFIX)

            await cleanup_dir(build_dir, "bootloader", "stale bootloader build directory")
            await cleanup_file(partial_path, "bootloader", "stale partial bootloader")
            await aiofiles.os.makedirs(build_dir, exist_ok=True)

            try:
                await run_command(
                    [self.settings.installer_binary, "-c", self.settings.bootloader_manifest, build_dir],
                    error_cls=BuildError,
                    description="build bootloader",
                    context_id="bootloader",
                )
                built = build_dir / constants.BOOTLOADER_BUILD_OUTPUT
                if not await aiofiles.os.path.isfile(built):
                    raise BuildError(
                        f"Installer did not produce {constants.BOOTLOADER_BUILD_OUTPUT}",
                        context={"build_dir": str(build_dir)},
                    )
                await asyncio.to_thread(shutil.move, built, partial_path)
                await aiofiles.os.replace(partial_path, final_path)
            except BaseException:
                await cleanup_file(partial_path, "bootloader", "partial bootloader")
                raise
            finally:
                await cleanup_dir(build_dir, "bootloader", "bootloader build directory")

            logger.info("Bootloader ready", extra={"path": str(final_path)})
            return final_path

    # -------------------------------------------------------------------------
    # Base image
    # -------------------------------------------------------------------------

    async def ensure_base_image(self) -> Path:
        """Build the base image for the configured variant if it is not cached.

        Steps, all on ``<variant>.bin.partial``:
        1. Allocate a sparse zero-filled file of ``disk_size_mb``
        2. Format it with the bootloader
        3. Mount it and populate it from the seed archive, or with the installer
        4. Unmount, then rename to the final name

        Raises:
            BuildError: Formatting, population or publication failed
            MountFailure: The image could not be mounted for population
            UnmountFailure: The image stayed mounted after population
        """
        final_path = self.base_image_path
        if await aiofiles.os.path.exists(final_path):
            return final_path

        bootloader = await self.ensure_bootloader()

        async with self._build_lock():
            if await aiofiles.os.path.exists(final_path):
                return final_path

            variant = self.settings.image_variant
            logger.info(
                "Building base image",
                extra={"variant": variant, "path": str(final_path), "size_mb": self.settings.disk_size_mb},
            )
            partial_path = final_path.with_name(final_path.name + constants.PARTIAL_SUFFIX)
            mount_dir = self.cache_dir / f"{variant}{constants.PARTIAL_SUFFIX}.d"

            await cleanup_file(partial_path, variant, "stale partial image")
            try:
                await self._allocate(partial_path)
                await run_command(
                    [self.settings.mkfs_binary, partial_path, bootloader],
                    error_cls=BuildError,
                    description="format base image",
                    context_id=variant,
                )
                await self.mount_controller.mount(partial_path, mount_dir)
                await self._populate(mount_dir)
                await self.mount_controller.unmount(mount_dir)
                await aiofiles.os.replace(partial_path, final_path)
            except BaseException:
                await asyncio.shield(self._abandon_build(partial_path, mount_dir))
                raise

            await cleanup_dir(mount_dir, variant, "base image mount directory")
            logger.info("Base image ready", extra={"variant": variant, "path": str(final_path)})
            return final_path

    async def _populate(self, mount_dir: Path) -> None:
        """Fill the mounted image from the seed archive, else with the installer."""
        variant = self.settings.image_variant
        seed = await self.seed_archive()
        if seed is not None:
            logger.info("Extracting seed archive", extra={"variant": variant, "seed_archive": str(seed)})
            await run_command(
                [self.settings.tar_binary, "-x", "-p", "-f", seed, "-C", mount_dir],
                error_cls=BuildError,
                description="extract seed archive",
                context_id=variant,
            )
            return
        await run_command(
            [self.settings.installer_binary, "-c", self.settings.variant_manifest, mount_dir],
            error_cls=BuildError,
            description="populate base image",
            context_id=variant,
        )

    async def _allocate(self, path: Path) -> None:
        size = self.settings.disk_size_mb * 1024 * 1024

        def _truncate() -> None:
            with path.open("wb") as f:
                f.truncate(size)

        try:
            await asyncio.to_thread(_truncate)
        except OSError as e:
            raise BuildError(
                f"Failed to allocate base image: {e}",
                context={"path": str(path), "size_bytes": size},
            ) from e

    async def _abandon_build(self, partial_path: Path, mount_dir: Path) -> None:
        """Best-effort unmount, then delete the partial image. Never raises."""
        variant = self.settings.image_variant
        unmounted = True
        try:
            await self.mount_controller.unmount(mount_dir)
        except GuestExecError as e:
            unmounted = False
            logger.error(
                "Could not unmount abandoned base image build",
                extra={"mount_dir": str(mount_dir), "error": e.message},
            )
        except OSError as e:
            logger.debug("Mount table unreadable during build cleanup", extra={"error": str(e)})

        await cleanup_file(partial_path, variant, "partial base image")
        if unmounted:
            await cleanup_dir(mount_dir, variant, "base image mount directory")
