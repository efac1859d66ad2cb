"""
Logging configuration for MiniChat.

Console output is split by severity (INFO and below to stdout, WARNING and
above to stderr); file output goes to a rotating log per context under the
configured log directory.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Optional

from minichat.config import Settings, settings as default_settings

STANDARD_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class _MaxLevelFilter(logging.Filter):
    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _formatter(config: Settings) -> logging.Formatter:
    if config.log_format == "json":
        return JsonFormatter()
    return logging.Formatter(STANDARD_FORMAT)


def setup_logging(context: str = "cli", config: Optional[Settings] = None) -> None:
    """
    Configure the ``minichat`` logger hierarchy.

    Args:
        context: Log file name stem, e.g. ``cli`` writes ``cli.log``
        config: Settings to read (defaults to the global settings)

    Raises:
        PermissionError: If the log directory cannot be created
    """
    config = config or default_settings
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    formatter = _formatter(config)

    root = logging.getLogger("minichat")
    root.setLevel(level)
    root.propagate = False
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if config.log_console_enabled:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(level)
        stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
        stdout_handler.setFormatter(formatter)
        root.addHandler(stdout_handler)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(max(level, logging.WARNING))
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    if config.log_file_enabled:
        log_dir = config.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{context}.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.debug(f"Logging configured for {context} at {logging.getLevelName(level)}")
