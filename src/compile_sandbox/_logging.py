"""Logging for compile-sandbox.

The package logs under the ``compile_sandbox`` logger and only attaches a
NullHandler; output handlers belong to whoever embeds it. The level can be
preset with COMPILE_SANDBOX_LOG_LEVEL.

The CLI and the HTTP server call configure_logging(), which writes to
stderr through click from a background thread:

    INFO [2026-10-19 14:03:11] compile_sandbox.controller - Job finished job_id=3f2a... state=completed

Structured context passed as ``extra={...}`` is appended as key=value pairs,
so a job can be followed across modules by grepping its id. Records are
handed over through a bounded queue; when it is full they are dropped
rather than stalling a job's event loop.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "compile_sandbox"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 4096

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}

_LEVEL_COLORS = {
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}


def _level_from_env() -> int | None:
    name = os.environ.get("COMPILE_SANDBOX_LOG_LEVEL", "").strip().upper()
    value = logging.getLevelNamesMapping().get(name)
    return value or None  # NOTSET means "not configured"


if (_env_level := _level_from_env()) is not None:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)


class _ContextFormatter(logging.Formatter):
    """Standard line plus the record's ``extra`` fields as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS and not k.startswith("_")}
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, tail = line.partition("\n")  # keep tracebacks below the context
        return f"{head} {pairs}{sep}{tail}"


class _StderrSink(logging.Handler):
    """Writes formatted records to stderr; runs on the listener thread only."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = _ContextFormatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, fg=_LEVEL_COLORS.get(record.levelno)), err=True)
        except BlockingIOError:
            pass  # stderr full, drop
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueueingHandler(logging.handlers.QueueHandler):
    """Enqueues without blocking; a QueueListener drains to _StderrSink."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _StderrSink(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep extras and exc_info as they are
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Module logger inside the compile_sandbox hierarchy."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Send package logs to stderr (CLI and server entry points).

    Idempotent: the stderr handler is installed once per process.

    Args:
        level: Log level; overrides COMPILE_SANDBOX_LOG_LEVEL
        quiet: Only errors; wins over level
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _QueueingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueueingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
