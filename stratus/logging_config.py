"""Process-wide logging setup.

Log lines emitted while an orchestrator operation is running are tagged with
the instance they belong to, so interleaved pipelines from concurrent requests
stay readable::

    2026-01-05 10:12:03 | INFO     | inst-42 | stratus.services.saga | Stage storage started
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import logging
import os
import sys
from typing import Iterator

_DEFAULT_LOG_LEVEL = "INFO"
_NO_INSTANCE = "-"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(instance_id)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_RESET = "\x1b[0m"
_LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[1;31m",
}
# SDK clients log every request below WARNING.
_CHATTY_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore")

_current_instance: ContextVar[str] = ContextVar("stratus_instance_id", default=_NO_INSTANCE)


@contextmanager
def instance_log_context(instance_id: str) -> Iterator[None]:
    """Tag every record logged by this thread with ``instance_id`` until exit."""
    token = _current_instance.set(instance_id)
    try:
        yield
    finally:
        _current_instance.reset(token)


class InstanceContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "instance_id"):
            record.instance_id = _current_instance.get()
        return True


class _LevelColorFormatter(logging.Formatter):
    def __init__(self, *, use_color: bool) -> None:
        super().__init__(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
        self._use_color = use_color

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        color = _LEVEL_COLORS.get(record.levelno) if self._use_color else None
        if not color:
            return line
        return line.replace(record.levelname, f"{color}{record.levelname}{_RESET}", 1)


def _color_enabled(stream) -> bool:
    if os.getenv("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def _level_from(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("STRATUS_LOG_LEVEL") or _DEFAULT_LOG_LEVEL).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _build_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(InstanceContextFilter())
    handler.setFormatter(_LevelColorFormatter(use_color=_color_enabled(handler.stream)))
    return handler


def configure_logging(*, level: str | int | None = None, force: bool = False) -> None:
    """Install the stratus handler on the root logger.

    Calling it again only adjusts levels unless ``force`` is set, so the API
    and the CLI can both call it at import time.
    """
    resolved = _level_from(level)
    root = logging.getLogger()
    root.setLevel(resolved)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))

    if root.handlers and not force:
        for handler in root.handlers:
            handler.setLevel(resolved)
        return

    root.handlers.clear()
    root.addHandler(_build_handler(resolved))
