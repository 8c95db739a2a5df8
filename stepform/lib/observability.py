"""Logging helpers for form sessions.

Engine modules log through plain ``logging.getLogger(__name__)`` loggers.
This module configures the root logger (plain or JSON output) and provides
a FormLogger that stamps every record with session context so interleaved
sessions in one process can be told apart.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "JSONFormatter",
    "FormLogger",
    "get_form_logger",
    "setup_logging",
]

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Formatter that renders log records as JSON."""

    def __init__(
        self,
        include_fields: Optional[List[str]] = None,
        exclude_fields: Optional[List[str]] = None,
    ):
        super().__init__()
        self.include_fields = include_fields or []
        self.exclude_fields = exclude_fields or []

    def format(self, record: logging.LogRecord) -> str:
        """Format a record as JSON."""
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        for field_name in self.include_fields:
            if hasattr(record, field_name):
                payload[field_name] = getattr(record, field_name)

        extra_attrs = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and k not in self.exclude_fields
        }
        if extra_attrs:
            payload["extra"] = extra_attrs

        return json.dumps(payload, default=str)


class FormLogger:
    """Logger with automatic form session context."""

    def __init__(self, name: str, **context: Any):
        self._logger = logging.getLogger(name)
        self._context: Dict[str, Any] = dict(context)

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    def set_context(self, **kwargs: Any) -> None:
        """Add contextual information to logs."""
        self._context.update(kwargs)

    def clear_context(self) -> None:
        """Remove session context."""
        self._context.clear()

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
        extra = kwargs.pop("extra", {})
        extra.update(self._context)
        self._logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        kwargs["exc_info"] = True
        self._log(logging.ERROR, msg, *args, **kwargs)


def get_form_logger(name: str, **context: Any) -> FormLogger:
    """Return a FormLogger for the given module name."""
    return FormLogger(name, **context)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    level: Optional[str] = None,
) -> None:
    """Configure the root logger with optional JSON formatting.

    A full-screen terminal session owns stdout, so hosts running one will
    usually pass ``console=False`` together with ``log_file``.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_format: Emit one JSON object per record
        log_file: Also write records to this file
        console: Attach a stderr handler
        level: Explicit level name (e.g. "WARNING"); overrides ``verbose``
    """
    if level:
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
    else:
        resolved = logging.DEBUG if verbose else logging.INFO

    formatter = JSONFormatter() if json_format else logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(resolved)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(resolved)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if not root_logger.handlers:
        # Keeps records away from logging.lastResort, which writes to stderr
        root_logger.addHandler(logging.NullHandler())

    # prompt_toolkit's event loop logs selector noise at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)
