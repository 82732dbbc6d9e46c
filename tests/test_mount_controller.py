"""Tests for mount_controller.py.

Uses the fake mount daemon and unmount helper from conftest, which record
mounts in a fake mount table file.
"""

from pathlib import Path

import pytest

from guest_exec.exceptions import InvalidStateTransition, MountFailure, UnmountFailure
from guest_exec.models import MountState
from guest_exec.mount_controller import MountController, canonical_dir, parse_mount_table
from guest_exec.settings import Settings

# ============================================================================
# Mount table parsing
# ============================================================================


class TestParseMountTable:
    def test_basic_entries(self) -> None:
        text = "proc /proc proc rw 0 0\nredoxfs /tmp/run-1 fuse.redoxfs rw,nosuid 0 0\n"
        entries = parse_mount_table(text)

        assert [e.target for e in entries] == [Path("/proc"), Path("/tmp/run-1")]
        assert entries[1].fstype == "fuse.redoxfs"
        assert entries[1].source == "redoxfs"

    def test_octal_escapes_decoded(self) -> None:
        entries = parse_mount_table("redoxfs /tmp/with\\040space fuse rw 0 0\n")
        assert entries[0].target == Path("/tmp/with space")

    def test_blank_and_short_lines_skipped(self) -> None:
        assert parse_mount_table("\n  \nbogus\n") == []


# ============================================================================
# is_mounted
# ============================================================================


class TestIsMounted:
    async def test_matches_fuse_entry(self, settings: Settings, tmp_path: Path) -> None:
        target = tmp_path / "mnt"
        target.mkdir()
        settings.mount_table.write_text(f"redoxfs {canonical_dir(target)} fuse.redoxfs rw 0 0\n")

        assert await MountController(settings).is_mounted(target)

    async def test_other_fstype_ignored(self, settings: Settings, tmp_path: Path) -> None:
        """Only mounts made by the FUSE daemon count."""
        target = tmp_path / "mnt"
        target.mkdir()
        settings.mount_table.write_text(f"tmpfs {canonical_dir(target)} tmpfs rw 0 0\n")

        assert not await MountController(settings).is_mounted(target)

    async def test_fuseblk_prefix_not_confused(self, settings: Settings, tmp_path: Path) -> None:
        target = tmp_path / "mnt"
        target.mkdir()
        settings.mount_table.write_text(f"/dev/sdb1 {canonical_dir(target)} fuseblk rw 0 0\n")

        assert not await MountController(settings).is_mounted(target)

    async def test_canonicalizes_symlinks(self, settings: Settings, tmp_path: Path) -> None:
        """The mount table records resolved paths."""
        real = tmp_path / "real"
        real.mkdir()
        link = tmp_path / "link"
        link.symlink_to(real)
        settings.mount_table.write_text(f"redoxfs {canonical_dir(real)} fuse rw 0 0\n")

        assert await MountController(settings).is_mounted(link)

    async def test_unmounted_directory(self, settings: Settings, tmp_path: Path) -> None:
        assert not await MountController(settings).is_mounted(tmp_path / "nothing")


# ============================================================================
# mount / unmount
# ============================================================================


class TestMountRoundTrip:
    async def test_mount_then_unmount(self, settings: Settings, tmp_path: Path) -> None:
        image = tmp_path / "disk.bin"
        image.write_bytes(b"\0" * 1024)
        target = tmp_path / "mnt"
        controller = MountController(settings)

        await controller.mount(image, target)
        assert await controller.is_mounted(target)
        assert controller.state(target) == MountState.MOUNTED

        await controller.unmount(target)
        assert not await controller.is_mounted(target)
        assert controller.state(target) == MountState.UNMOUNTED

    async def test_daemon_reaped_after_unmount(self, settings: Settings, tmp_path: Path) -> None:
        image = tmp_path / "disk.bin"
        image.write_bytes(b"\0" * 1024)
        target = tmp_path / "mnt"
        controller = MountController(settings)

        await controller.mount(image, target)
        daemon = controller._daemons[canonical_dir(target)].process
        await controller.unmount(target)

        assert daemon.returncode is not None
        assert canonical_dir(target) not in controller._daemons

    async def test_unmount_not_mounted_is_noop(self, settings: Settings, tmp_path: Path) -> None:
        controller = MountController(settings)
        await controller.unmount(tmp_path / "never-mounted")
        assert controller.state(tmp_path / "never-mounted") == MountState.UNMOUNTED

    async def test_remount_same_directory(self, settings: Settings, tmp_path: Path) -> None:
        image = tmp_path / "disk.bin"
        image.write_bytes(b"\0" * 1024)
        target = tmp_path / "mnt"
        controller = MountController(settings)

        for _ in range(2):
            await controller.mount(image, target)
            await controller.unmount(target)

        assert not await controller.is_mounted(target)


class TestStaleMount:
    """A mount left behind by a crashed run is removed before mounting."""

    async def test_mount_over_stale_mount(self, settings: Settings, tmp_path: Path) -> None:
        image = tmp_path / "disk.bin"
        image.write_bytes(b"\0" * 1024)
        target = tmp_path / "mnt"
        target.mkdir()
        with settings.mount_table.open("a") as f:
            f.write(f"redoxfs {canonical_dir(target)} fuse.redoxfs rw 0 0\n")
        controller = MountController(settings)

        await controller.mount(image, target)

        assert controller.state(target) == MountState.MOUNTED
        entries = [line for line in settings.mount_table.read_text().splitlines() if str(canonical_dir(target)) in line]
        assert len(entries) == 1

        await controller.unmount(target)
        assert not await controller.is_mounted(target)


class TestMountFailure:
    async def test_daemon_exits_before_mount(self, settings: Settings, tmp_path: Path) -> None:
        """Fake daemon exits 1 for a missing image: fail fast, never hang."""
        target = tmp_path / "mnt"
        controller = MountController(settings)

        with pytest.raises(MountFailure) as exc_info:
            await controller.mount(tmp_path / "missing.bin", target)

        assert exc_info.value.context["returncode"] == 1
        assert not await controller.is_mounted(target)
        assert canonical_dir(target) not in controller._daemons

    async def test_daemon_never_mounts_times_out(self, settings: Settings, tmp_path: Path, write_tool) -> None:
        daemon = write_tool("silent-daemon", "import time\ntime.sleep(60)\n")
        settings = settings.model_copy(update={"mount_binary": str(daemon), "mount_timeout_seconds": 0.3})
        image = tmp_path / "disk.bin"
        image.write_bytes(b"\0")
        target = tmp_path / "mnt"
        controller = MountController(settings)

        with pytest.raises(MountFailure, match="not confirmed"):
            await controller.mount(image, target)

        assert canonical_dir(target) not in controller._daemons

    async def test_missing_daemon_binary(self, settings: Settings, tmp_path: Path) -> None:
        settings = settings.model_copy(update={"mount_binary": str(tmp_path / "no-such-daemon")})
        controller = MountController(settings)

        with pytest.raises(MountFailure, match="Failed to start"):
            await controller.mount(tmp_path / "disk.bin", tmp_path / "mnt")

        assert controller.state(tmp_path / "mnt") == MountState.FAILED


class TestUnmountFailure:
    async def test_still_mounted_raises(self, settings: Settings, tmp_path: Path, write_tool) -> None:
        """Unmount helper fails and the entry stays: fatal, directory flagged FAILED."""
        image = tmp_path / "disk.bin"
        image.write_bytes(b"\0" * 1024)
        target = tmp_path / "mnt"
        controller = MountController(settings)
        await controller.mount(image, target)

        broken = write_tool("broken-fusermount", "import sys\nprint('device busy', file=sys.stderr)\nsys.exit(1)\n")
        controller.settings = settings.model_copy(
            update={"unmount_binary": str(broken), "unmount_timeout_seconds": 0.2}
        )

        with pytest.raises(UnmountFailure) as exc_info:
            await controller.unmount(target)

        assert controller.state(target) == MountState.FAILED
        assert exc_info.value.context["request_error"]["stderr"] == "device busy"

        # Release the fake mount so the daemon exits
        controller.settings = settings
        await controller.unmount(target)
        assert controller.state(target) == MountState.UNMOUNTED


class TestTransitions:
    def test_invalid_transition_raises(self, settings: Settings, tmp_path: Path) -> None:
        controller = MountController(settings)
        target = canonical_dir(tmp_path)

        with pytest.raises(InvalidStateTransition):
            controller._transition(target, MountState.FAILED)

    def test_same_state_is_noop(self, settings: Settings, tmp_path: Path) -> None:
        controller = MountController(settings)
        controller._transition(canonical_dir(tmp_path), MountState.UNMOUNTED)
        assert controller.state(tmp_path) == MountState.UNMOUNTED
