"""spawn-stack environment variable configuration.

Environment variables:
    SPAWN_STACK_TERM_TIMEOUT: Seconds to wait after SIGTERM before SIGKILL
        when a running process has to be shut down gracefully
        - default 2.0, clamped to 0.1-60

    SPAWN_STACK_KILL_TIMEOUT: Seconds to wait for the process to disappear
        after SIGKILL
        - default 1.0, clamped to 0.1-60

    SPAWN_STACK_LOG_DEBUG: Debug logging
        - true/1/yes/on = log everything to a temporary file
        - false/0/no/off = off (default)

    SPAWN_STACK_LOG_LEVEL: Level of the ``spawn_stack`` logger
        - DEBUG/INFO/WARNING/ERROR, default WARNING
        - ignored when SPAWN_STACK_LOG_DEBUG is on
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "get_config", "load_config", "reload_config"]

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_LOG_LEVEL = "WARNING"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None, default: float) -> float:
    """Parse a timeout in seconds, falling back to ``default`` on junk."""
    if not value:
        return default
    try:
        timeout = float(value)
    except ValueError:
        return default
    return max(0.1, min(timeout, 60.0))


def _parse_log_level(value: str | None) -> str:
    if not value:
        return DEFAULT_LOG_LEVEL
    level = value.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        return DEFAULT_LOG_LEVEL
    return level


def _generate_log_file_path() -> str:
    """Timestamped log file below the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "spawn-stack"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"spawn_stack_debug_{timestamp}.log"

    return str(log_file.resolve())


@dataclass
class Config:
    """spawn-stack configuration.

    Attributes:
        term_timeout: Grace period after SIGTERM (seconds)
        kill_timeout: Wait after SIGKILL (seconds)
        log_debug: Debug logging to a temporary file
        log_file: Log file path (set when log_debug is on)
        log_level: Level name of the ``spawn_stack`` logger
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    log_debug: bool = False
    log_file: str | None = None
    log_level: str = DEFAULT_LOG_LEVEL

    def __repr__(self) -> str:
        return (
            f"Config(term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"log_level={self.log_level})"
        )


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("SPAWN_STACK_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        term_timeout=_parse_timeout(
            os.environ.get("SPAWN_STACK_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT
        ),
        kill_timeout=_parse_timeout(
            os.environ.get("SPAWN_STACK_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT
        ),
        log_debug=log_debug,
        log_file=log_file,
        log_level="DEBUG" if log_debug else _parse_log_level(os.environ.get("SPAWN_STACK_LOG_LEVEL")),
    )


# Lazily loaded global instance
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload the configuration (used by tests)."""
    global _config
    _config = load_config()
    return _config
