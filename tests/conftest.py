"""Shared pytest fixtures for guest-exec tests.

The host tools (installer, formatter, FUSE mount daemon, unmount helper and
emulator) are replaced by small Python scripts written into tmp_path, so the
whole pipeline runs without root, FUSE or QEMU:

- The mount daemon appends an entry to a fake mount table and exits once the
  entry disappears, like a FUSE daemon does after fusermount -u.
- The "mounted" filesystem is the plain mount directory.
- The emulator reads the manifest and executable from the directory that
  backed the working image and runs the payload on the host. By default it
  brackets the output with the log sentinels and reports the payload status
  through the debug-exit encoding; with FAKE_QEMU_RUNNER=redoxerd it writes
  the bare output and exits 51 or 53 like redoxerd does.
"""

import os
import stat
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from guest_exec.models import ExitConvention
from guest_exec.settings import Settings
from guest_exec.system_probes import _probe_cache

# ============================================================================
# Fake tool scripts
# ============================================================================

FAKE_MOUNT_DAEMON = """
import sys
import time
from pathlib import Path

TABLE = Path(__TABLE__)
image, directory = sys.argv[1], sys.argv[2]
if not Path(image).is_file():
    print(f"redoxfs: {image}: not found", file=sys.stderr)
    sys.exit(1)
entry = "redoxfs " + directory.replace(" ", "\\\\040") + " fuse.redoxfs rw,nosuid,nodev 0 0\\n"
with TABLE.open("a") as f:
    f.write(entry)
while entry in TABLE.read_text().splitlines(keepends=True):
    time.sleep(0.01)
"""

FAKE_UNMOUNT = """
import sys
from pathlib import Path

TABLE = Path(__TABLE__)
directory = sys.argv[2].replace(" ", "\\\\040")
lines = TABLE.read_text().splitlines(keepends=True)
kept = [line for line in lines if line.split()[1] != directory]
if len(kept) == len(lines):
    print(f"fusermount: entry for {sys.argv[2]} not found", file=sys.stderr)
    sys.exit(1)
TABLE.write_text("".join(kept))
"""

FAKE_INSTALLER = """
import sys
from pathlib import Path

CALLS = Path(__CALLS__)
manifest, target = Path(sys.argv[2]), Path(sys.argv[3])
with CALLS.open("a") as f:
    f.write(f"{manifest.name} {target}\\n")
print(f"installing {manifest.name} to {target}")
if manifest.name == "bootloader.toml":
    (target / "boot").mkdir(parents=True, exist_ok=True)
    (target / "boot" / "bootloader.bios").write_bytes(b"BOOTLOADER")
else:
    (target / "etc").mkdir(parents=True, exist_ok=True)
    (target / "etc" / "hostname").write_text("guest\\n")
"""

FAKE_MKFS = """
import sys
from pathlib import Path

image, bootloader = Path(sys.argv[1]), Path(sys.argv[2])
if not bootloader.is_file():
    print("redoxfs-mkfs: missing bootloader", file=sys.stderr)
    sys.exit(1)
with image.open("r+b") as f:
    f.write(b"RedoxFS")
"""

FAKE_QEMU = """
import os
import signal
import subprocess
import sys
from pathlib import Path

args = sys.argv[1:]
if args[:2] == ["-accel", "help"]:
    print("Accelerators supported in QEMU binary:")
    print("tcg")
    sys.exit(0)


def option(flag):
    return [args[i + 1] for i, arg in enumerate(args[:-1]) if arg == flag][-1]


log_path = Path(option("-chardev").split("path=", 1)[1])
image = Path(option("-drive").split("file=", 1)[1].rsplit(",format=", 1)[0])
root = image.with_suffix("")

if os.environ.get("FAKE_QEMU_SIGNAL"):
    os.kill(os.getpid(), signal.SIGKILL)

name, *argv = (root / "etc" / "redoxerd").read_text().splitlines()
proc = subprocess.run([str(root / "bin" / name), *argv], capture_output=True, text=True)
if os.environ.get("FAKE_QEMU_RUNNER") == "redoxerd":
    # redoxerd mirrors the payload's terminal verbatim and reports pass/fail only
    log_path.write_text(proc.stdout)
    sys.exit(51 if proc.returncode == 0 else 53)
with log_path.open("w") as log:
    log.write("BIOS boot\\nredoxerd: starting\\n<guest-exec>\\n")
    log.write(proc.stdout)
    log.write("</guest-exec>\\nredoxerd: shutting down\\n")
sys.exit((proc.returncode << 1) | 1)
"""


def write_script(path: Path, body: str) -> Path:
    """Write an executable Python script running under the test interpreter."""
    path.write_text(f"#!{sys.executable}\n{body.lstrip()}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@dataclass
class FakeTools:
    """Paths of the generated fake host tools."""

    bin_dir: Path
    mount_table: Path
    installer_calls: Path
    installer: Path
    mkfs: Path
    mount_daemon: Path
    unmount: Path
    qemu: Path

    def installer_call_count(self) -> int:
        if not self.installer_calls.exists():
            return 0
        return len(self.installer_calls.read_text().splitlines())

    def mounted_targets(self) -> list[str]:
        return [line.split()[1] for line in self.mount_table.read_text().splitlines() if line.strip()]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def reset_probe_cache() -> Iterator[None]:
    """Isolate cached host probes between tests."""
    _probe_cache.reset()
    yield
    _probe_cache.reset()


@pytest.fixture
def write_tool(tmp_path: Path) -> Callable[[str, str], Path]:
    """Factory writing an extra executable script into the fake bin dir."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def _write(name: str, body: str) -> Path:
        return write_script(bin_dir / name, body)

    return _write


@pytest.fixture
def fake_tools(tmp_path: Path, write_tool: Callable[[str, str], Path]) -> FakeTools:
    """Generate working fake tools sharing one fake mount table."""
    mount_table = tmp_path / "mounts"
    mount_table.write_text("proc /proc proc rw,nosuid,nodev,noexec,relatime 0 0\n")
    installer_calls = tmp_path / "installer-calls.txt"

    return FakeTools(
        bin_dir=tmp_path / "bin",
        mount_table=mount_table,
        installer_calls=installer_calls,
        installer=write_tool("redox_installer", FAKE_INSTALLER.replace("__CALLS__", repr(str(installer_calls)))),
        mkfs=write_tool("redoxfs-mkfs", FAKE_MKFS),
        mount_daemon=write_tool("redoxfs", FAKE_MOUNT_DAEMON.replace("__TABLE__", repr(str(mount_table)))),
        unmount=write_tool("fusermount", FAKE_UNMOUNT.replace("__TABLE__", repr(str(mount_table)))),
        qemu=write_tool("qemu-system-x86_64", FAKE_QEMU),
    )


@pytest.fixture
def settings(tmp_path: Path, fake_tools: FakeTools) -> Settings:
    """Settings wired to the fake tools and tmp_path directories."""
    fuse_device = tmp_path / "fuse"
    fuse_device.touch()
    return Settings(
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        qemu_binary=str(fake_tools.qemu),
        installer_binary=str(fake_tools.installer),
        mkfs_binary=str(fake_tools.mkfs),
        mount_binary=str(fake_tools.mount_daemon),
        unmount_binary=str(fake_tools.unmount),
        mount_table=fake_tools.mount_table,
        fuse_device=fuse_device,
        exit_convention=ExitConvention.STATUS,
        disk_size_mb=1,
        force_emulation=True,
        mount_timeout_seconds=10.0,
        unmount_timeout_seconds=2.0,
    )


@pytest.fixture
def make_payload(tmp_path: Path) -> Callable[[str, str], Path]:
    """Factory for payload executables (Python scripts run by the fake emulator)."""
    payload_dir = tmp_path / "payloads"
    payload_dir.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> Path:
        return write_script(payload_dir / name, body)

    return _make


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop GUEST_EXEC_* variables from the environment."""
    for key in list(os.environ):
        if key.startswith("GUEST_EXEC_"):
            monkeypatch.delenv(key)
