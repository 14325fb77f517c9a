from __future__ import annotations

import logging
import os
from typing import Any

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_LOGGER_PREFIX = "pnl_statements"
_CONFIGURED = False


def configure_logging(level: str | int | None = None) -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    resolved: str | int = level if level is not None else os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(level=resolved, format=_DEFAULT_FORMAT)
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    if not name.startswith(_LOGGER_PREFIX):
        name = f"{_LOGGER_PREFIX}.{name}"
    return logging.getLogger(name)


def kv(**fields: Any) -> str:
    """Render ``key=value`` pairs for log lines, skipping ``None`` values."""
    return " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
