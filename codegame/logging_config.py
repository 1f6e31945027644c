"""Project-wide logging setup.

Design goals:
- Library modules only create loggers; nothing is configured on import.
- Applications call setup_logging() once (idempotent: calling it again won't
  duplicate handlers).
- Text or JSON output, optionally mirrored to a rotating UTF-8 file.

Usage:
    from codegame.logging_config import setup_logging
    setup_logging(level="DEBUG")
    setup_logging(level="INFO", json_format=True, log_file="logs/codegame.log")

Environment overrides:
    CODEGAME_LOG_LEVEL=DEBUG|INFO|WARNING|ERROR
    CODEGAME_LOG_FILE=path/to/file.log
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .config import get_config

_FILE_HANDLER_NAME = "codegame_file"
_CONSOLE_HANDLER_NAME = "codegame_console"

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s:%(lineno)d | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured log output."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def _parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level

    level_str = (level or "").strip().upper()
    if not level_str:
        return logging.INFO

    return logging._nameToLevel.get(level_str, logging.INFO)


def setup_logging(
    *,
    level: str | int | None = None,
    json_format: bool = False,
    log_file: str | None = None,
    enable_console: bool = True,
    max_bytes: int = 2 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure the root logger.

    level defaults to ClientConfig.log_level. Returns the root logger.
    """
    env_level = os.environ.get("CODEGAME_LOG_LEVEL")
    if env_level:
        level = env_level
    elif level is None:
        level = get_config().log_level

    env_log_file = os.environ.get("CODEGAME_LOG_FILE")
    if env_log_file:
        log_file = env_log_file

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)  # let handlers filter

    formatter: logging.Formatter
    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)

    existing_by_name = {getattr(h, "name", ""): h for h in root.handlers}

    if enable_console:
        console_handler = existing_by_name.get(_CONSOLE_HANDLER_NAME)
        if console_handler is None:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.name = _CONSOLE_HANDLER_NAME
            root.addHandler(console_handler)

        console_handler.setFormatter(formatter)
        console_handler.setLevel(_parse_level(level))

    if log_file:
        log_path = Path(log_file)
        if not log_path.is_absolute():
            log_path = Path.cwd() / log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = existing_by_name.get(_FILE_HANDLER_NAME)
        if file_handler is None:
            file_handler = RotatingFileHandler(
                str(log_path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.name = _FILE_HANDLER_NAME
            root.addHandler(file_handler)

        file_handler.setFormatter(formatter)
        file_handler.setLevel(_parse_level(level))

    # quieten third-party libraries
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialized | level=%s file=%s console=%s",
        level,
        log_file or "-",
        enable_console,
    )

    return root
