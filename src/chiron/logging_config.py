"""
Logging configuration for Chiron.

Configures the root logger with a rotating log file per context ("cli",
"chat", ...) and console handlers that split INFO/DEBUG to stdout and
WARNING and above to stderr.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from chiron.config import Settings, settings as default_settings

STANDARD_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured_contexts: set[str] = set()


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _MaxLevelFilter(logging.Filter):
    """Pass only records strictly below a level."""

    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return logging.Formatter(STANDARD_FORMAT)


def setup_logging(
    context: str = "cli",
    console: Optional[bool] = None,
    config: Optional[Settings] = None,
) -> None:
    """
    Configure application logging.

    Args:
        context: Name of the running surface; used as the log file name
        console: Override for console logging (the chat loop disables it)
        config: Settings to use (defaults to the global settings)

    Raises:
        PermissionError: If the log directory cannot be created or written
    """
    config = config or default_settings
    if context in _configured_contexts:
        return

    root = logging.getLogger()
    root.setLevel(config.log_level.upper())
    formatter = _build_formatter(config.log_format)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.log_file_enabled:
        log_dir = config.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / f"{context}.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    console_enabled = config.log_console_enabled if console is None else console
    if console_enabled:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(logging.DEBUG)
        stdout_handler.addFilter(_MaxLevelFilter(logging.WARNING))
        stdout_handler.setFormatter(formatter)
        root.addHandler(stdout_handler)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    # Quiet chatty HTTP client loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _configured_contexts.add(context)
    logging.getLogger(__name__).debug(f"Logging configured for context '{context}'")
