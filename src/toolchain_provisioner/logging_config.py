"""
Logging configuration.

Library modules only create module level loggers. The CLI calls
configure_logging once, which attaches handlers to the package logger.

Environment
TOOLCHAIN_LOG_LEVEL   DEBUG, INFO, WARNING or ERROR, default WARNING
TOOLCHAIN_LOG_FORMAT  text or json, default text
TOOLCHAIN_LOG_FILE    optional path, rotated at 10MB, always JSON
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Mapping, Optional

PACKAGE_LOGGER = "toolchain_provisioner"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    log_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> logging.Logger:
    """
    Configure the package logger.

    Explicit arguments win over the environment. Calling it again replaces
    the handlers instead of stacking them.
    """

    env = os.environ if environ is None else environ
    level = (level or env.get("TOOLCHAIN_LOG_LEVEL") or "WARNING").upper()
    fmt = (fmt or env.get("TOOLCHAIN_LOG_FORMAT") or "text").lower()
    log_file = log_file or env.get("TOOLCHAIN_LOG_FILE") or ""

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, level, logging.WARNING))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(console)

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(JSONFormatter())
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
