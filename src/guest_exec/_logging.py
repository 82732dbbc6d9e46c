"""Centralized logging for guest-exec.

Library logging follows the stdlib convention for libraries:
- NullHandler on the library root logger
- No other handlers unless an entry point calls configure_logging()
- GUEST_EXEC_LOG_LEVEL env var controls the level

CLI output format:
    INFO [2026-10-18 10:02:54] guest_exec.image_catalog - Building bootloader

Non-blocking logging:
    QueueHandler + QueueListener decouple log emission from stderr I/O.
    The guest console shares the operator's terminal with our diagnostics,
    so a slow terminal must never stall a poll loop. When the queue is full
    records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "guest_exec"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# Honor GUEST_EXEC_LOG_LEVEL env var (e.g. "DEBUG", "WARNING")
_env_level = os.environ.get("GUEST_EXEC_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and unknown names (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 1024


class _ClickHandler(logging.Handler):
    """Writes formatted records to stderr via click.echo with dim styling.

    Runs on the QueueListener thread. click.echo() strips ANSI codes when
    stderr is not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass  # stderr buffer full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Queue-backed handler that never blocks the caller."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        """Same-process queue, no pickling needed."""
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    All guest_exec modules use this instead of logging.getLogger()
    so the logger hierarchy stays under the library root.
    """
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Configure library logging for CLI / application entry points.

    Idempotent: adds a _NonBlockingHandler only if none is attached yet.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides env var.
        quiet: If True, set level to ERROR. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)


def shutdown_logging() -> None:
    """Flush and detach the CLI handler so queued records reach stderr before exit."""
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    for handler in list(lib_logger.handlers):
        if isinstance(handler, _NonBlockingHandler):
            lib_logger.removeHandler(handler)
            handler.close()
