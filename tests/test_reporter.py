"""Tests for reporter.py: log extraction and RunResult assembly."""

from pathlib import Path

from guest_exec.constants import INDETERMINATE_STATUS
from guest_exec.models import ExitConvention, WorkspacePaths
from guest_exec.reporter import ResultReporter, extract_guest_output


class TestExtractGuestOutput:
    """Payload output is the region between the sentinel lines."""

    def test_bracketed_region_only(self) -> None:
        log = "BIOS boot\nkernel: ok\n<guest-exec>\nhello\nworld\n</guest-exec>\npowering off\n"
        assert extract_guest_output(log) == "hello\nworld\n"

    def test_no_sentinels_returns_verbatim(self) -> None:
        log = "just some output\nno markers\n"
        assert extract_guest_output(log) == log

    def test_missing_end_keeps_rest(self) -> None:
        """Guest died mid-run: keep everything after the start marker."""
        log = "boot\n<guest-exec>\npartial output\n"
        assert extract_guest_output(log) == "partial output\n"

    def test_empty_region(self) -> None:
        assert extract_guest_output("<guest-exec>\n</guest-exec>\n") == ""

    def test_crlf_sentinels(self) -> None:
        log = "boot\r\n<guest-exec>\r\nhello\r\n</guest-exec>\r\n"
        assert extract_guest_output(log) == "hello\r\n"

    def test_empty_log(self) -> None:
        assert extract_guest_output("") == ""

    def test_sentinel_text_inside_line_ignored(self) -> None:
        """Only whole-line sentinels count."""
        log = "echo <guest-exec> inline\n"
        assert extract_guest_output(log) == log


class TestResultReporter:
    """ResultReporter combines the decoded status with the log."""

    async def test_report_success(self, tmp_path: Path) -> None:
        paths = WorkspacePaths.derive(tmp_path, "r1")
        paths.log_file.write_text("boot\n<guest-exec>\nhello\n</guest-exec>\n")

        result = await ResultReporter().report(paths, raw_status=1)

        assert result.exit_status == 0
        assert result.success
        assert result.log == "hello\n"
        assert result.raw_status == 1

    async def test_report_failure_status(self, tmp_path: Path) -> None:
        paths = WorkspacePaths.derive(tmp_path, "r2")
        paths.log_file.write_text("<guest-exec>\nboom\n</guest-exec>\n")

        result = await ResultReporter().report(paths, raw_status=85)

        assert result.exit_status == 42
        assert not result.success
        assert not result.indeterminate

    async def test_missing_log_is_empty(self, tmp_path: Path) -> None:
        """Emulator killed before writing anything: empty log, indeterminate status."""
        paths = WorkspacePaths.derive(tmp_path, "r3")

        result = await ResultReporter().report(paths, raw_status=-9)

        assert result.log == ""
        assert result.exit_status == INDETERMINATE_STATUS
        assert result.indeterminate

    async def test_invalid_utf8_replaced(self, tmp_path: Path) -> None:
        paths = WorkspacePaths.derive(tmp_path, "r4")
        paths.log_file.write_bytes(b"<guest-exec>\nbad \xff byte\n</guest-exec>\n")

        result = await ResultReporter().report(paths, raw_status=1)

        assert result.log == "bad \ufffd byte\n"

    async def test_redoxerd_failure_keeps_verbatim_log(self, tmp_path: Path) -> None:
        """redoxerd prints no sentinels and reports failure as 53."""
        paths = WorkspacePaths.derive(tmp_path, "r5")
        paths.log_file.write_text("thread 'main' panicked\n")

        result = await ResultReporter(ExitConvention.REDOXERD).report(paths, raw_status=53)

        assert result.exit_status == 1
        assert result.log == "thread 'main' panicked\n"
