#!/usr/bin/env python3
"""Filesystem locations and environment-driven settings for tmux-claude."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from tmux_claude.logging_utils import JsonlLogger, read_logging_config


DEFAULT_TMUX_TIMEOUT = 2.0
DEFAULT_SNAPSHOT_TIMEOUT = 3.0
DEFAULT_WATCH_INTERVAL = 2.0


def _env_float(name: str, fallback: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    return value if value > 0 else fallback


def cache_dir() -> Path:
    override = os.environ.get("TMUX_CLAUDE_CACHE_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    xdg = os.environ.get("XDG_CACHE_HOME", "").strip()
    if xdg:
        return Path(xdg).expanduser() / "tmux-claude"
    return Path.home() / ".cache" / "tmux-claude"


def claude_projects_dir() -> Path:
    override = os.environ.get("CLAUDE_PROJECTS_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".claude" / "projects"


@dataclass(frozen=True)
class Paths:
    root: Path

    @property
    def socket(self) -> Path:
        override = os.environ.get("TMUX_CLAUDE_SOCKET", "").strip()
        return Path(override).expanduser() if override else self.root / "daemon.sock"

    @property
    def pid_file(self) -> Path:
        return self.root / "daemon.pid"

    @property
    def daemon_state(self) -> Path:
        return self.root / "daemon-state.json"

    @property
    def parked(self) -> Path:
        return self.root / "parked.json"

    @property
    def restorable(self) -> Path:
        return self.root / "restore.json"

    @property
    def preferences(self) -> Path:
        return self.root / "preferences.json"

    @property
    def todos(self) -> Path:
        return self.root / "todos.json"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"


def default_paths() -> Paths:
    return Paths(root=cache_dir())


def tmux_timeout() -> float:
    return _env_float("TMUX_CLAUDE_TMUX_TIMEOUT", DEFAULT_TMUX_TIMEOUT)


def snapshot_timeout() -> float:
    return _env_float("TMUX_CLAUDE_SNAPSHOT_TIMEOUT", DEFAULT_SNAPSHOT_TIMEOUT)


def make_logger(paths: Paths, component: str, debug: bool = False) -> JsonlLogger:
    config = read_logging_config()
    if debug:
        config.level = "debug"
    return JsonlLogger(paths.log_dir / f"{component}.jsonl", component=component, config=config)
