"""
Logger factory.

All modules log through ``get_logger(__name__)``. A single stream handler is
attached to the package logger; the level comes from AI_USAGE_SYNC_LOG_LEVEL.
"""

import logging
import os

PACKAGE_LOGGER = "ai_usage_sync"
LOG_LEVEL_ENV = "AI_USAGE_SYNC_LOG_LEVEL"

_HANDLER_ATTACHED = False
_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _resolve_level() -> int:
    level_name = os.getenv(LOG_LEVEL_ENV, "WARNING").upper()
    return getattr(logging, level_name, logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger under the package logger."""
    global _HANDLER_ATTACHED

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(_resolve_level())

    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        package_logger.addHandler(handler)
        _HANDLER_ATTACHED = True

    if name == PACKAGE_LOGGER or name.startswith(PACKAGE_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
