"""Logging setup for Nephyra: text or JSON records on stderr."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional


class JsonFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Structured context passed via extra={"extra_data": {...}}
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        return json.dumps(log_data, ensure_ascii=False, default=str)


TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(
    name: str = "nephyra",
    level: str = "WARNING",
    format_type: str = "text",
    stream: Optional[object] = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Records go to stderr so that stdout stays clean for reports and JSON.

    Args:
        name: Logger name (the package root by default)
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        format_type: 'text' or 'json'
        stream: Override the output stream (tests)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Reconfiguring replaces the previous handler instead of stacking another
    for handler in list(logger.handlers):
        if getattr(handler, "_nephyra_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler._nephyra_handler = True  # type: ignore[attr-defined]

    if format_type == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    return logger
