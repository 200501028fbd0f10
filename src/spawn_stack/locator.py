"""Executable resolution and "not found" diagnostics.

The platform is always passed in explicitly (``sys.platform`` by default),
so the same invocation never consults process-wide state twice.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
from collections.abc import Mapping

from .errors import ExecutableNotFoundError
from .types import STACK, ToolSpec

__all__ = [
    "locate_executable",
    "normalize_platform",
    "not_found_error",
    "platform_help_url",
]

logger = logging.getLogger(__name__)

# Anchors of the installation page, keyed by normalized platform
_INSTALL_ANCHORS: dict[str, str] = {
    "darwin": "macos",
    "windows": "windows",
    "linux": "linux",
    "freebsd": "freebsd",
    "openbsd": "openbsd",
}


def normalize_platform(platform: str) -> str:
    """Map ``sys.platform`` style identifiers onto a small stable set.

    ``freebsd13`` becomes ``freebsd``, ``linux2`` becomes ``linux`` and
    ``win32``/``cygwin`` become ``windows``. Unknown values are returned
    lower-cased.
    """
    value = platform.lower().strip()
    if value in ("win32", "cygwin", "msys"):
        return "windows"
    for prefix in ("freebsd", "openbsd", "linux"):
        if value.startswith(prefix):
            return prefix
    return value


def platform_help_url(platform: str, install_url: str = STACK.install_url) -> str | None:
    """Return the platform specific installation URL, if one is documented."""
    anchor = _INSTALL_ANCHORS.get(normalize_platform(platform))
    if anchor is None:
        return None
    return f"{install_url}#{anchor}"


def not_found_error(tool: ToolSpec, platform: str) -> ExecutableNotFoundError:
    """Build the actionable error for a missing executable."""
    url = platform_help_url(platform, tool.install_url) or tool.install_url
    return ExecutableNotFoundError(
        f"`{tool.name}` command is not found in your PATH. "
        f"Make sure you have installed {tool.display_name}. {url}",
        executable=tool.name,
        help_url=url,
    )


def locate_executable(
    tool: ToolSpec,
    env: Mapping[str, str] | None,
    *,
    platform: str | None = None,
) -> str:
    """Resolve the tool against the PATH the child process would see.

    Args:
        tool: Wrapped tool
        env: Effective child environment (None = inherit the parent's)
        platform: Platform identifier used for diagnostics

    Returns:
        Absolute path of the executable

    Raises:
        ExecutableNotFoundError: Nothing named ``tool.name`` on that PATH
    """
    platform = platform if platform is not None else sys.platform
    search_path = _search_path(os.environ if env is None else env)

    resolved = shutil.which(tool.name, path=search_path) if search_path else None
    if resolved is None:
        logger.debug(f"{tool.name} not found on PATH={search_path!r} platform={platform}")
        raise not_found_error(tool, platform)

    logger.debug(f"Resolved {tool.name} to {resolved}")
    return resolved


def _search_path(env: Mapping[str, str]) -> str:
    if sys.platform == "win32":
        # Windows environment keys are case-insensitive
        for key, value in env.items():
            if key.upper() == "PATH":
                return value
        return ""
    return env.get("PATH", "")
