"""Command-line interface for guest-exec.

Usage:
    gexec ./hello                         # Run a binary in a fresh guest
    gexec ./tool --flag value             # Arguments after PROGRAM go to the guest
    gexec -f ./data ./tool ./data/in.txt  # Copy ./data to /root, rewrite the path
    gexec -o run.log ./tests              # Save the captured output
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import NoReturn

import click

from guest_exec import (
    GuestExecError,
    GuestPayload,
    RunInterrupted,
    RunResult,
    Settings,
    __version__,
)
from guest_exec._logging import configure_logging, shutdown_logging
from guest_exec.harness import run_interruptible, run_payload

# Exit codes following Unix conventions
EXIT_CLI_ERROR = 2
EXIT_HARNESS_ERROR = 125
EXIT_INDETERMINATE = 126
EXIT_SIGNAL_BASE = 128  # 128 + signal number, like a shell


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_result_json(result: RunResult) -> str:
    output = {
        "exit_status": result.exit_status,
        "indeterminate": result.indeterminate,
        "raw_status": result.raw_status,
        "log": result.log,
    }
    return json.dumps(output, indent=2)


def exit_code_for(result: RunResult) -> int:
    """Map a run result to this process's exit code.

    The guest's own status when known. Otherwise 128 + signal if the
    emulator was killed, else EXIT_INDETERMINATE.
    """
    if not result.indeterminate:
        return result.exit_status
    if result.raw_status is not None and result.raw_status < 0:
        return EXIT_SIGNAL_BASE - result.raw_status
    return EXIT_INDETERMINATE


def emit_result(result: RunResult, output: Path | None, json_output: bool) -> None:
    """Surface the captured log (always, success or failure) and a status banner.

    With ``output`` the log, or the JSON document with ``json_output``, goes
    to that file instead of stdout.
    """
    text = format_result_json(result) + "\n" if json_output else result.log
    if output is not None:
        output.write_text(text, encoding="utf-8")
    else:
        click.echo(text, nl=False)

    if result.success:
        banner = click.style("## gexec (success) ##", fg="green")
    elif result.indeterminate:
        banner = click.style(f"## gexec (failure, emulator exit status {result.raw_status}) ##", fg="red")
    else:
        banner = click.style(f"## gexec (failure, exit status {result.exit_status}) ##", fg="red")
    click.echo(banner, err=True)


def _suggestions_for(error: GuestExecError) -> list[str]:
    missing = error.context.get("missing")
    if missing:
        return [f"Install {name} or point the matching GUEST_EXEC_*_BINARY variable at it" for name in missing]
    if "fuse_device" in error.context:
        return ["Load the fuse kernel module (modprobe fuse) or set GUEST_EXEC_FUSE_DEVICE"]
    if "stderr" in error.context and error.context["stderr"]:
        return [f"Tool output: {error.context['stderr'].splitlines()[-1]}"]
    return []


async def run(payload: GuestPayload, settings: Settings, output: Path | None, json_output: bool) -> int:
    """Run the payload and return the exit code for the CLI."""
    try:
        result = await run_interruptible(run_payload(payload, settings))
    except RunInterrupted as e:
        click.echo(format_error("Interrupted", e.message), err=True)
        return EXIT_SIGNAL_BASE + e.signum
    except GuestExecError as e:
        finished = e.context.get("run_result")
        if isinstance(finished, RunResult):
            emit_result(finished, output, json_output)
        click.echo(format_error(type(e).__name__, e.message, _suggestions_for(e)), err=True)
        return EXIT_HARNESS_ERROR

    emit_result(result, output, json_output)
    return exit_code_for(result)


@click.command(
    context_settings={
        "help_option_names": ["-h", "--help"],
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
    }
)
@click.argument("program", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option(
    "-f",
    "--folder",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Folder whose contents are copied to the guest /root",
)
@click.option("-g", "--gui", is_flag=True, help="Use the GUI image and show the emulator display")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    help="Write the captured output (the JSON document with --json) to FILE instead of stdout",
)
@click.option("--json", "json_output", is_flag=True, help="Output result as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.option("-v", "--verbose", is_flag=True, help="Log debug details")
@click.version_option(__version__, "-V", "--version", prog_name="guest-exec")
def main(
    program: Path,
    args: tuple[str, ...],
    folder: Path | None,
    gui: bool,
    output: Path | None,
    json_output: bool,
    quiet: bool,
    verbose: bool,
) -> NoReturn:
    """Run PROGRAM with ARGS inside a fresh, throwaway guest.

    The guest console is attached to this terminal. The program's captured
    output is printed when the guest shuts down, and gexec exits with the
    program's exit status.

    Examples:

    \b
      gexec ./hello
      gexec ./grep -r needle /root        # with -f, guest paths work too
      gexec -f ./fixtures ./test ./fixtures/case1
      gexec --json ./hello | jq .exit_status
    """
    configure_logging(level="DEBUG" if verbose else "INFO", quiet=quiet)
    try:
        try:
            settings = Settings(gui=gui) if gui else Settings()
        except ValueError as exc:
            raise click.UsageError(f"Invalid GUEST_EXEC_* configuration: {exc}") from exc

        payload = GuestPayload(executable=program, arguments=args, folder=folder)
        exit_code = asyncio.run(run(payload, settings, output, json_output))
    finally:
        shutdown_logging()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
