"""Logging setup for RepoBrief.

Console output is human-readable by default and JSON lines when ``LOG_JSON``
is set; an optional log file always receives JSON lines. Pipeline code uses
``get_structured_logger`` to tag every line of a run with its project or job.
"""

from __future__ import annotations
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

CONTEXT_PREFIX = "ctx_"

# Dependencies that log every request or poll at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "apscheduler", "groq", "asyncio")


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Context fields attached by StructuredLogger, without their prefix."""
    return {
        key[len(CONTEXT_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(CONTEXT_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with context fields nested under ``context``."""

    def __init__(self, service_name: str = "repobrief"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        context = record_context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """``time | LEVEL | logger | message | key=value ...`` with ANSI level colors."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[36m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = True):
        super().__init__(datefmt='%Y-%m-%d %H:%M:%S')
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, self.datefmt), f"{record.levelname:8}", record.name, record.getMessage()]
        context = record_context(record)
        if context:
            parts.append(" ".join(f"{key}={value}" for key, value in context.items()))
        line = " | ".join(parts)

        color = self.LEVEL_COLORS.get(record.levelno)
        if self.use_colors and color:
            line = f"{color}{line}{self.RESET}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    level: str = "INFO",
    service_name: str = "repobrief",
    log_file: Optional[str] = None,
    use_json: bool = False,
    use_colors: bool = True
) -> None:
    """Replace the root handlers with RepoBrief's console (and optional file) handlers.

    Args:
        level: Log level name; unknown names fall back to INFO
        service_name: Value of the ``service`` field in JSON lines
        log_file: Path of a JSON-lines log file, created with its parent directory
        use_json: Emit JSON lines on the console instead of the readable format
        use_colors: Color console lines when stdout is a terminal
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)

    console = logging.StreamHandler(sys.stdout)
    if use_json:
        console.setFormatter(JSONFormatter(service_name))
    else:
        console.setFormatter(ColoredFormatter(use_colors and sys.stdout.isatty()))
    root.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter(service_name))
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class StructuredLogger:
    """Logger facade that stamps fixed and per-call context on each record."""

    def __init__(self, name: str, **context):
        self.logger = logging.getLogger(name)
        self.context = context

    def bind(self, **context) -> "StructuredLogger":
        return StructuredLogger(self.logger.name, **{**self.context, **context})

    def _log(self, level: int, message: str, exc_info: bool = False, **context) -> None:
        if not self.logger.isEnabledFor(level):
            return
        fields = {**self.context, **context}
        extra = {f"{CONTEXT_PREFIX}{key}": value for key, value in fields.items()}
        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self._log(logging.ERROR, message, **context)

    def exception(self, message: str, **context) -> None:
        self._log(logging.ERROR, message, exc_info=True, **context)


def get_structured_logger(name: str, **context) -> StructuredLogger:
    return StructuredLogger(name, **context)
