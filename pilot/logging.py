"""
Logging configuration for DeskPilot.

Two destinations:
  - File: always DEBUG level, one rolling file per server process
  - Console: DEBUG if --verbose, WARNING+ otherwise
  - Format: "timestamp | level | name | session_id | tag | message"
  - Config console_format options:
    - "full"   — same structured format as the file handler
    - "simple" — (default) bare messages for DEBUG/INFO, [LEVEL] prefix for WARNING+
    - "clean"  — no console output at all (file logging still active)

Many conversations share one event loop, so the session id lives in a
context variable rather than on the filter itself: each Turn Loop task sets
it once and every record emitted from that task carries it.

Log files are stored in ~/.deskpilot/logs/.
"""

import contextvars
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional

from config import get_data_dir


LOGGER_NAME = "deskpilot"

_session_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "deskpilot_session_id", default=""
)


def tagged(tag: str) -> dict:
    """Return ``extra`` dict for logger calls: ``logger.debug("...", extra=tagged("x"))``."""
    return {"log_tag": tag}


# Module-level state (shared across re-inits)
_session_filter: Optional["_SessionFilter"] = None
_current_log_file: Optional[Path] = None


class _SessionFilter(logging.Filter):
    """Injects session_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id_var.get() or "-"
        if not hasattr(record, "log_tag"):
            record.log_tag = ""
        return True


class _ConsoleFormatter(logging.Formatter):
    """Console formatter: shows [LEVEL] prefix only for WARNING and above."""

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno >= logging.WARNING:
            return f"  [{record.levelname}] {record.getMessage()}"
        return f"  {record.getMessage()}"


_FILE_FORMAT = logging.Formatter(
    "%(asctime)s | %(levelname)-8s | %(name)s | %(session_id)s | %(log_tag)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def attach_log_file(name: str = "server") -> Path:
    """Attach a file handler writing to ``<data_dir>/logs/deskpilot_{name}.log``.

    Replaces any file handler attached earlier. Returns the log file path.
    """
    global _current_log_file
    log_dir = get_data_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / f"deskpilot_{name}.log"
    _current_log_file = log_file

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]

    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(_FILE_FORMAT)
    logger.addHandler(file_handler)

    logger.info("=" * 60)
    logger.info(f"Log started at {datetime.now().isoformat()}")
    logger.info(f"Log file: {log_file}")
    return log_file


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Configure console logging for the project logger.

    The file handler is attached separately by ``attach_log_file()``.

    Args:
        verbose: If True, show DEBUG level on console; otherwise WARNING+.

    Returns:
        Configured logger instance.
    """
    global _session_filter

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # Capture everything, filter at handler level
    logger.propagate = False

    # Clear existing handlers (in case of re-init)
    logger.handlers.clear()

    if _session_filter is None:
        _session_filter = _SessionFilter()
    logger.addFilter(_session_filter)

    import config as _config
    console_format = _config.get("console_format", "simple")

    if console_format != "clean":
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
        if console_format == "full":
            console_handler.setFormatter(_FILE_FORMAT)
        else:
            console_handler.setFormatter(_ConsoleFormatter())
        logger.addHandler(console_handler)

    return logger


def get_logger() -> logging.Logger:
    """Get the project logger (creates with defaults if not configured)."""
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        return setup_logging(verbose=False)
    return logger


def set_session_id(session_id: str) -> contextvars.Token:
    """Set the session ID included in log lines emitted from the current task.

    Returns the context-variable token so callers can restore the previous
    value with ``reset_session_id()``.
    """
    return _session_id_var.set(session_id)


def reset_session_id(token: contextvars.Token) -> None:
    _session_id_var.reset(token)


def log_error(
    message: str,
    exc: Optional[Exception] = None,
    context: Optional[dict] = None,
) -> None:
    """Log an error with full details including stack trace.

    Args:
        message: Error description
        exc: Optional exception to include stack trace from
        context: Optional dict of additional context (backend, action, etc.)
    """
    lines = [message]

    if context:
        lines.append("Context:")
        for key, value in context.items():
            lines.append(f"  {key}: {value}")

    if exc:
        lines.append(f"Exception type: {type(exc).__name__}")
        lines.append(f"Exception message: {exc}")
        lines.append("Stack trace:")
        lines.append(
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        )

    get_logger().error("\n".join(lines), extra=tagged("error"))
