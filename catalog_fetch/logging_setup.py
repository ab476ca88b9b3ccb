"""Root logger configuration for the command line entry points."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FORMATS = ("text", "json")
# httpx logs full request URLs at INFO, and those carry the API key.
_QUIET_LOGGERS = ("httpx", "httpcore")

_installed_handlers: list[logging.Handler] = []


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JSONFormatter()
    return logging.Formatter(DEFAULT_TEXT_FORMAT)


def setup_logging(
    level: str = DEFAULT_LOG_LEVEL,
    log_format: str = "text",
    log_file: Path | str | None = None,
) -> None:
    """Configure the root logger with a stderr handler and an optional file handler.

    Calling it again replaces the handlers installed by the previous call.
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"log_format must be one of {', '.join(LOG_FORMATS)}, got '{log_format}'.")
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level '{level}'.")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    formatter = _build_formatter(log_format)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    _installed_handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        # Files are always machine-readable.
        file_handler.setFormatter(JSONFormatter())
        _installed_handlers.append(file_handler)

    for handler in _installed_handlers:
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    logging.getLogger(__name__).debug(
        "Logging configured. Level=%s format=%s", level.upper(), log_format
    )
