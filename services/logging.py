from __future__ import annotations

import os
import sys

from loguru import logger as _loguru_logger

TAG = __name__

_FALLBACK_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level:<8} | {extra[tag]} | {message}"

_LOGGER = None


def _stdout_logger(reason: str):
    """Plain stdout sink for processes without config.yaml, such as the storage trigger."""
    _loguru_logger.remove()
    _loguru_logger.configure(extra={"tag": "-"})
    _loguru_logger.add(
        sys.stdout,
        format=os.environ.get("LOG_FORMAT", _FALLBACK_FORMAT),
        level=os.environ.get("LOG_LEVEL", "INFO"),
    )
    _loguru_logger.bind(tag=TAG).debug(f"Using stdout logging: {reason}")
    return _loguru_logger


def setup_logging():
    """Shared loguru logger for the service modules.

    Uses the config-driven setup when the config layer loads and falls back
    to stdout otherwise.
    """
    global _LOGGER
    if _LOGGER is None:
        try:
            from config.logger import setup_logging as configured_logging

            _LOGGER = configured_logging()
        except Exception as exc:
            _LOGGER = _stdout_logger(str(exc))
    return _LOGGER
