"""Pytest configuration and fixtures."""

from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_STACK_PATH = FIXTURES_DIR / "fake_stack.py"

IS_WINDOWS = sys.platform == "win32"


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Short termination timeouts and a fresh config for every test."""
    from spawn_stack import config

    monkeypatch.setenv("SPAWN_STACK_TERM_TIMEOUT", "0.5")
    monkeypatch.setenv("SPAWN_STACK_KILL_TIMEOUT", "0.3")
    monkeypatch.delenv("SPAWN_STACK_LOG_DEBUG", raising=False)
    monkeypatch.delenv("SPAWN_STACK_LOG_LEVEL", raising=False)
    config.reload_config()
    yield
    monkeypatch.undo()
    config.reload_config()


@pytest.fixture
def stack_bin(tmp_path: Path) -> Path:
    """Directory containing an executable `stack` that runs the fake CLI."""
    if IS_WINDOWS:
        pytest.skip("fake `stack` wrapper is a POSIX shell script")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    wrapper = bin_dir / "stack"
    wrapper.write_text(
        "#!/bin/sh\n"
        f'exec "{sys.executable}" "{FAKE_STACK_PATH}" "$@"\n'
    )
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return bin_dir


@pytest.fixture
def stack_options(stack_bin: Path) -> dict:
    """Options that make the fake `stack` the only one on PATH."""
    return {"env": {"PATH": str(stack_bin)}}


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary working directory."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def empty_path_options(tmp_path: Path) -> dict:
    """Options under which no `stack` can possibly be found."""
    return {
        "cwd": str(tmp_path / "none" / "exists"),
        "env": {},
        "extend_env": False,
    }

