"""Logging setup for the critique pipeline.

Every line logged while a session runs carries the session id and, inside
a stage, the stage name:

    14:02:11 [INFO] [3f2a9c1e/critique] pipeline: Stage started | ...

Both values live in ContextVars, so concurrent sessions (run_many) each
see their own. They only decorate log records; pipeline code always
receives the session id as an explicit argument.

Usage:
    >>> from observability.logging import setup_logging, session_context, stage_context
    >>> setup_logging(config)
    >>> with session_context(session.id), stage_context("critique"):
    ...     logger.info("Stage started")
"""

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from typing import Any, Iterator

LOG_FILE_NAME = "lens.log"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("aiohttp", "httpx", "httpcore", "asyncio", "openai", "sentence_transformers", "urllib3")

session_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("session_id", default="-")
stage_var: contextvars.ContextVar[str] = contextvars.ContextVar("stage", default="")


@contextmanager
def session_context(session_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with a (shortened) session id."""
    token = session_id_var.set(session_id[:8] if session_id else "-")
    try:
        yield
    finally:
        session_id_var.reset(token)


@contextmanager
def stage_context(stage: str) -> Iterator[None]:
    """Tag log records emitted inside the block with a stage name."""
    token = stage_var.set(stage)
    try:
        yield
    finally:
        stage_var.reset(token)


class ContextFilter(logging.Filter):
    """Copy the session id and stage onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = session_id_var.get()
        record.stage = stage_var.get()
        stage = f"/{record.stage}" if record.stage else ""
        record.context = f"{record.session_id}{stage}"
        return True


_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "session_id", "stage", "context", "taskName",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Keys: timestamp, level, logger, message, session_id, stage (when set),
    source (warnings and above), exception, plus any `extra={...}` fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session_id": getattr(record, "session_id", "-"),
        }
        stage = getattr(record, "stage", "")
        if stage:
            log_data["stage"] = stage

        if record.levelno >= logging.WARNING:
            log_data["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED:
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """TIMESTAMP [LEVEL] [session/stage] logger: message"""

    def __init__(self, include_date: bool = False):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(context)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S" if include_date else "%H:%M:%S",
        )


def _file_handler(config: Any) -> logging.Handler:
    log_file = config.log_dir / LOG_FILE_NAME
    if config.log_max_bytes > 0:
        return RotatingFileHandler(
            log_file,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
    # Daily rotation at midnight
    return TimedRotatingFileHandler(
        log_file,
        when="midnight",
        interval=1,
        backupCount=config.log_backup_count,
        encoding="utf-8",
    )


def setup_logging(config: Any, verbose: bool = False) -> bool:
    """Configure console (stderr) and rotating file logging.

    Replaces any handlers already on the root logger. If the log
    directory is not writable, logs to the console only.

    Args:
        config: Config with log_dir, log_level, log_format, log_max_bytes, log_backup_count
        verbose: Force DEBUG on the console

    Returns:
        True if file logging is enabled
    """
    console_level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO)
    json_output = config.log_format == "json"
    context_filter = ContextFilter()

    # stderr keeps stdout clean for command output
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(JsonFormatter() if json_output else TextFormatter())
    console.addFilter(context_filter)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    root.addHandler(console)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    try:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = _file_handler(config)
    except OSError as e:
        print(
            f"Warning: Cannot write to log directory '{config.log_dir}': {e}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        return False

    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JsonFormatter() if json_output else TextFormatter(include_date=True))
    file_handler.addFilter(context_filter)
    root.addHandler(file_handler)
    return True
