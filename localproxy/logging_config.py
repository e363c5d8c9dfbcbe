"""
JSON-line logging for the proxy.

Every record written by the ``uvicorn.error`` logger becomes one JSON object per
line with ``timestamp``, ``level``, ``message`` and, when the caller passed
``extra={"data": ...}``, a ``data`` member. Records go to the console unless the
level is ``silent`` and are appended to ``LOG_FILE`` when one is configured.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional, TextIO

from localproxy.config import ProxyConfig
from localproxy.models import Transaction

LOGGER_NAME = "uvicorn.error"

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_LEVEL_NAMES = {
    logging.CRITICAL: "error",
    logging.ERROR: "error",
    logging.WARNING: "warn",
    logging.INFO: "info",
    logging.DEBUG: "debug",
}

logger = logging.getLogger(LOGGER_NAME)


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": _LEVEL_NAMES.get(record.levelno, record.levelname.lower()),
            "message": record.getMessage(),
        }
        data = getattr(record, "data", None)
        if data is not None:
            entry["data"] = data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(
    config: ProxyConfig, stream: Optional[TextIO] = None
) -> logging.Logger:
    """Attach JSON handlers to the proxy logger according to ``config``.

    Console records go to ``stream``, or to the current ``sys.stdout``.
    """
    shutdown_logging()
    logger.propagate = False

    if config.log_level == "silent":
        logger.setLevel(logging.CRITICAL + 1)
        logger.addHandler(logging.NullHandler())
        return logger

    level = _LEVELS[config.log_level]
    logger.setLevel(level)
    formatter = JsonLineFormatter()

    console = logging.StreamHandler(stream if stream is not None else sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def shutdown_logging() -> None:
    """Flush and detach every handler owned by the proxy logger."""
    for handler in list(logger.handlers):
        try:
            handler.flush()
        except ValueError:
            # the stream was closed under the handler
            pass
        handler.close()
        logger.removeHandler(handler)


def log_transaction(transaction: Transaction) -> None:
    logger.info("HTTP Transaction", extra={"data": transaction.to_log_record()})
