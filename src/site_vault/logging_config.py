"""Structured logging for site-vault.

Backups run unattended inside a job runner, so every milestone, skipped
file and retried transfer is logged with the backup it belongs to. Fields
set through ``log_context`` are attached to every record emitted in the
same thread; ``job_log`` additionally mirrors one backup's records into
its own JSON log file next to the backup artifacts.
"""

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

ROOT_LOGGER = "site_vault"

_log_context = threading.local()


def _get_context() -> Dict[str, Any]:
    """Return the mutable log context of the current thread."""
    if not hasattr(_log_context, "data"):
        _log_context.data = {}
    data: Dict[str, Any] = _log_context.data
    return data


def current_context() -> Dict[str, Any]:
    """Snapshot the current thread's log context.

    Worker threads start with an empty context; pass this snapshot to
    ``log_context(**snapshot)`` inside the worker to keep fields such as
    ``backup_id`` on records logged from the pool.
    """
    return dict(_get_context())


class JSONFormatter(logging.Formatter):
    """Render log records as one JSON object per line.

    Example output:
        {
            "timestamp": "2025-10-11T22:10:00.123456",
            "level": "INFO",
            "logger": "site_vault.pipeline",
            "message": "Uploaded chunk 2/5",
            "filename": "pipeline.py",
            "lineno": 88,
            "backup_id": "bk_42",
            "remote_key": "backups/t1/s1/bk_42/chunk-0001.tar.gz"
        }
    """

    RESERVED_FIELDS = {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
        "getMessage",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "filename": record.filename,
            "lineno": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in self.RESERVED_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class ContextFilter(logging.Filter):
    """Copy static and thread-local context fields onto each record.

    Args:
        context: Fields added to every record passing through the filter
    """

    def __init__(self, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__()
        self.context = context or {}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)

        for key, value in _get_context().items():
            setattr(record, key, value)

        return True


class _BackupFilter(logging.Filter):
    """Pass only records tagged with one backup_id."""

    def __init__(self, backup_id: str) -> None:
        super().__init__()
        self.backup_id = backup_id

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "backup_id", None) == self.backup_id


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """Add fields to every log record emitted within the scope.

    Nested scopes inherit and may override outer fields; the previous
    context is restored on exit.

    Example:
        with log_context(backup_id="bk_42"):
            logger.info("Building archives")
            with log_context(component="uploads"):
                logger.info("Packing part 2")
    """
    context = _get_context()
    old_context = context.copy()

    try:
        context.update(kwargs)
        yield
    finally:
        context.clear()
        context.update(old_context)


@contextmanager
def job_log(backup_id: str, log_dir: Union[str, Path]) -> Iterator[Path]:
    """Mirror one backup's log records into ``backup-{backup_id}.log``.

    The file handler is attached to the site-vault root logger for the
    duration of the scope and only accepts records carrying this
    backup_id. The scope also sets ``backup_id`` in the log context.

    Args:
        backup_id: Backup whose records are captured
        log_dir: Directory receiving the log file (created if needed)

    Yields:
        Path of the job log file
    """
    log_path = Path(log_dir) / f"backup-{backup_id}.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(log_path)
    handler.setFormatter(JSONFormatter())
    handler.addFilter(ContextFilter())
    handler.addFilter(_BackupFilter(backup_id))

    root = logging.getLogger(ROOT_LOGGER)
    if root.level == logging.NOTSET or root.level > logging.INFO:
        previous_level: Optional[int] = root.level
        root.setLevel(logging.INFO)
    else:
        previous_level = None
    root.addHandler(handler)

    try:
        with log_context(backup_id=backup_id):
            yield log_path
    finally:
        root.removeHandler(handler)
        handler.close()
        if previous_level is not None:
            root.setLevel(previous_level)


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure the site-vault logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit JSON (True) or plain text (False)
        log_file: Optional file receiving the same records as stdout

    Returns:
        The configured ``site_vault`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper()))

    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    formatter: Union[JSONFormatter, logging.Formatter]
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ContextFilter())
        logger.addHandler(file_handler)

    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return the ``site_vault.<name>`` child logger."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
