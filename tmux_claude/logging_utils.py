#!/usr/bin/env python3
"""JSONL event logs for the dashboard and the hook daemon, kept out of the terminal."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


LEVELS = ("debug", "info", "warn", "error")
DEFAULT_ROTATE_MB = 5
DEFAULT_RETENTION_FILES = 3


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def level_rank(level: str) -> int:
    """Position of ``level`` in LEVELS; unknown names rank as info."""
    name = level.lower()
    return LEVELS.index(name) if name in LEVELS else LEVELS.index("info")


@dataclass
class LoggerConfig:
    level: str = "info"
    rotate_mb: int = DEFAULT_ROTATE_MB
    retention_files: int = DEFAULT_RETENTION_FILES

    @property
    def rotate_bytes(self) -> int:
        return max(self.rotate_mb, 1) * 1024 * 1024

    @property
    def retention(self) -> int:
        return max(self.retention_files, 1)

    def enabled(self, level: str) -> bool:
        return level_rank(level) >= level_rank(self.level)


class JsonlLogger:
    """Append-only JSONL log with numbered backups (``x.jsonl.1`` is the newest).

    The daemon logs from its accept loop and from per-connection threads, so
    rotation and the append share one lock. A logger without a path drops
    every record.
    """

    def __init__(self, file_path: Path | None, component: str, config: LoggerConfig | None = None) -> None:
        self.file_path = file_path
        self.component = component
        self.config = config or LoggerConfig()
        self._lock = threading.Lock()
        if file_path is not None:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError:
                self.file_path = None

    def _rotate_if_full(self) -> None:
        path = self.file_path
        try:
            if path is None or path.stat().st_size < self.config.rotate_bytes:
                return
        except FileNotFoundError:
            return
        keep = self.config.retention
        _backup(path, keep).unlink(missing_ok=True)
        for n in range(keep - 1, 0, -1):
            if _backup(path, n).exists():
                _backup(path, n).rename(_backup(path, n + 1))
        path.rename(_backup(path, 1))

    def event(self, level: str, event: str, **fields: Any) -> None:
        if self.file_path is None or not self.config.enabled(level):
            return
        line = json.dumps(
            {
                "ts": utc_now_iso(),
                "level": LEVELS[level_rank(level)],
                "component": self.component,
                "event": event,
                "pid": os.getpid(),
                **fields,
            },
            ensure_ascii=False,
            default=str,
        )
        try:
            with self._lock:
                self._rotate_if_full()
                with self.file_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except OSError:
            # A full disk must not take down the dashboard or the daemon.
            pass


def _backup(path: Path, n: int) -> Path:
    return path.with_name(f"{path.name}.{n}")


def null_logger(component: str = "null") -> JsonlLogger:
    return JsonlLogger(None, component)


def read_logging_config(default_level: str = "info") -> LoggerConfig:
    level = os.environ.get("TMUX_CLAUDE_LOG_LEVEL", "").strip().lower() or default_level
    return LoggerConfig(
        level=level if level in LEVELS else default_level,
        rotate_mb=_env_positive_int("TMUX_CLAUDE_LOG_ROTATION_MB", DEFAULT_ROTATE_MB),
        retention_files=_env_positive_int("TMUX_CLAUDE_LOG_RETENTION_FILES", DEFAULT_RETENTION_FILES),
    )


def _env_positive_int(name: str, fallback: int) -> int:
    try:
        value = int(os.environ.get(name, ""))
    except ValueError:
        return fallback
    return value if value > 0 else fallback
