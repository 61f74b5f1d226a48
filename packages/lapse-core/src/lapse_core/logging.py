from __future__ import annotations

import json
import logging
import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lapse_core.config import LoggingConfig

ROOT_LOGGER = "lapse"

# Attributes passed through ``extra=`` by the sweeper and the store wrapper.
_EXTRA_FIELDS = ("state", "due", "purged", "stale", "keys")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, carrying known ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": record.created,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=repr)


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """Configure and return the root lapse logger.

    Installs a single stderr handler; later calls return the logger as-is.
    """
    logger = logging.getLogger(ROOT_LOGGER)

    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))

    logger.addHandler(handler)
    return logger


def setup_from_config(config: LoggingConfig) -> logging.Logger:
    return setup_logging(config.level, json_output=config.json_output)


def get_logger(name: str) -> logging.Logger:
    """Get a child logger under the lapse namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
