"""Logging setup for applications embedding spawn-stack.

The library itself only ever calls ``logging.getLogger(__name__)``. This
helper attaches a handler to the ``spawn_stack`` namespace and never
touches the root logger.
"""

from __future__ import annotations

import logging
import sys

from .config import Config, get_config

__all__ = ["LOG_FORMAT", "setup_logging"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_HANDLER_MARKER = "_spawn_stack_handler"


def setup_logging(config: Config | None = None) -> logging.Logger:
    """Configure the ``spawn_stack`` logger.

    In debug mode everything goes to ``config.log_file``, otherwise records
    at ``config.log_level`` and above go to stderr. Calling this again
    replaces the handler installed by the previous call.

    Args:
        config: Configuration (defaults to the global one)

    Returns:
        The configured package logger
    """
    config = config or get_config()
    package_logger = logging.getLogger("spawn_stack")

    for handler in list(package_logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            package_logger.removeHandler(handler)
            handler.close()

    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        level = logging.getLevelName(config.log_level)

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    setattr(handler, _HANDLER_MARKER, True)
    package_logger.addHandler(handler)
    package_logger.setLevel(level)

    return package_logger
