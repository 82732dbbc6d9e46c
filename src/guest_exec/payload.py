"""Copy a payload into a mounted guest filesystem.

Guest-visible layout written under the mount root:

    bin/<name>        the payload executable (mode 0755)
    etc/redoxerd      argument manifest read by the guest runner
    root/...          contents of the optional payload folder
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

import aiofiles
import aiofiles.os

from guest_exec import constants
from guest_exec._logging import get_logger
from guest_exec.exceptions import PayloadError
from guest_exec.models import GuestPayload

logger = get_logger(__name__)


def rewrite_arguments(arguments: tuple[str, ...], folder: Path | None) -> tuple[str, ...]:
    """Replace host paths inside ``folder`` with their guest location under /root.

    Only whole path components match: with folder ``/data/in``, ``/data/in/x``
    becomes ``/root/x`` but ``/data/input`` is left alone.
    """
    if folder is None:
        return arguments

    prefix = str(folder.resolve())
    rewritten: list[str] = []
    for arg in arguments:
        if arg == prefix or arg.startswith(prefix + "/"):
            new_arg = constants.GUEST_FOLDER_MOUNTPOINT + arg[len(prefix) :]
            logger.info("Rewriting argument to guest path", extra={"from": arg, "to": new_arg})
            rewritten.append(new_arg)
        else:
            rewritten.append(arg)
    return tuple(rewritten)


def build_manifest(guest_name: str, arguments: tuple[str, ...]) -> str:
    """Manifest text: executable name on the first line, then one argument per line.

    Raises:
        PayloadError: An argument contains a newline and cannot be represented
    """
    lines = [guest_name, *arguments]
    for line in lines:
        if "\n" in line or "\r" in line:
            raise PayloadError(
                "Arguments cannot contain line breaks",
                context={"argument": line},
            )
    return "".join(f"{line}\n" for line in lines)


class PayloadInjector:
    """Writes a GuestPayload into a mounted guest root."""

    async def validate(self, payload: GuestPayload) -> None:
        """Check the payload can be injected, before any image work.

        Raises:
            PayloadError: Executable missing or not a regular file, or folder not a directory
        """
        if not await aiofiles.os.path.isfile(payload.executable):
            raise PayloadError(
                f"Payload executable not found: {payload.executable}",
                context={"executable": str(payload.executable)},
            )
        if payload.folder is not None and not await aiofiles.os.path.isdir(payload.folder):
            raise PayloadError(
                f"Payload folder not found: {payload.folder}",
                context={"folder": str(payload.folder)},
            )

    async def inject(self, payload: GuestPayload, root: Path) -> Path:
        """Copy the executable (and folder) into ``root`` and write the manifest.

        Args:
            payload: What to run in the guest
            root: Mounted guest filesystem root

        Returns:
            Path of the written manifest
        """
        await self.validate(payload)

        bin_dir = root / constants.GUEST_BIN_DIR
        await aiofiles.os.makedirs(bin_dir, exist_ok=True)
        guest_executable = bin_dir / payload.guest_name
        try:
            await asyncio.to_thread(shutil.copyfile, payload.executable, guest_executable)
            await asyncio.to_thread(guest_executable.chmod, 0o755)
        except OSError as e:
            raise PayloadError(
                f"Failed to copy payload executable: {e}",
                context={"executable": str(payload.executable), "target": str(guest_executable)},
            ) from e
        logger.debug("Injected executable", extra={"source": str(payload.executable), "target": str(guest_executable)})

        if payload.folder is not None:
            folder_dir = root / constants.GUEST_FOLDER_DIR
            try:
                await asyncio.to_thread(shutil.copytree, payload.folder, folder_dir, symlinks=True, dirs_exist_ok=True)
            except OSError as e:
                raise PayloadError(
                    f"Failed to copy payload folder: {e}",
                    context={"folder": str(payload.folder), "target": str(folder_dir)},
                ) from e
            logger.debug("Injected folder", extra={"source": str(payload.folder), "target": str(folder_dir)})

        arguments = rewrite_arguments(payload.arguments, payload.folder)
        manifest_path = root / constants.GUEST_MANIFEST_PATH
        await aiofiles.os.makedirs(manifest_path.parent, exist_ok=True)
        async with aiofiles.open(manifest_path, "w") as f:
            await f.write(build_manifest(payload.guest_name, arguments))
        logger.debug("Wrote argument manifest", extra={"path": str(manifest_path), "argc": len(arguments)})
        return manifest_path
