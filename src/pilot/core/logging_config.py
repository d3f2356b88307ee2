"""Logging configuration for pilot.

Console output is plain text by default. JSON output puts one object per
line and carries any ``extra`` fields, which is how request log entries
become machine-readable.

Usage:
    from pilot.core.logging_config import configure_logging

    configure_logging(level="DEBUG", format="json")

Environment Variables:
    PILOT_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    PILOT_LOG_FORMAT: Output format ("text" or "json")
    PILOT_LOG_FILE: Optional log file path
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

TEXT_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# LogRecord attributes that are not user-supplied extras
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys() | {"message", "asctime"}
)

_configured = False


@dataclass
class LogConfig:
    """Resolved logging settings.

    Attributes:
        level: Log level name.
        format: "text" or "json".
        file_path: Also log to this file when set.
    """

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    file_path: str | None = None

    @classmethod
    def from_env(
        cls,
        level: str | None = None,
        format: str | None = None,
        file_path: str | None = None,
    ) -> LogConfig:
        """Explicit arguments win over PILOT_LOG_* environment variables."""
        resolved_format = (format or os.environ.get("PILOT_LOG_FORMAT") or "text").lower()
        if resolved_format not in ("text", "json"):
            raise ValueError(f"Unknown log format: {resolved_format!r}")
        return cls(
            level=(level or os.environ.get("PILOT_LOG_LEVEL") or "INFO").upper(),
            format=resolved_format,  # type: ignore[arg-type]
            file_path=file_path or os.environ.get("PILOT_LOG_FILE") or None,
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    {"timestamp": ..., "level": "INFO", "logger": "pilot.requests",
     "message": "...", "extra": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


def build_formatter(format: str) -> logging.Formatter:
    if format == "json":
        return JsonFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)


def configure_logging(
    level: str | None = None,
    format: Literal["text", "json"] | None = None,
    file_path: str | None = None,
    force: bool = False,
) -> LogConfig:
    """Configure the root logger once.

    Subsequent calls are ignored unless force=True.

    Args:
        level: Log level. Defaults to PILOT_LOG_LEVEL or "INFO".
        format: Output format. Defaults to PILOT_LOG_FORMAT or "text".
        file_path: Optional file path. Defaults to PILOT_LOG_FILE.
        force: Reconfigure even if already configured.

    Returns:
        The resolved configuration.
    """
    global _configured
    config = LogConfig.from_env(level, format, file_path)
    if _configured and not force:
        return config

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level))
    root_logger.handlers.clear()

    formatter = build_formatter(config.format)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.file_path:
        file_handler = logging.FileHandler(config.file_path)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # aiohttp's access log duplicates our request lines
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    _configured = True
    return config


def set_level(level: str, logger_name: str | None = None) -> None:
    """Set the level of one logger (root when logger_name is None)."""
    logging.getLogger(logger_name).setLevel(getattr(logging, level.upper()))
