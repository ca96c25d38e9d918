#!/usr/bin/env python3
"""Per-session toggles (auto-approve, mute, skip), the global mute flag and session todos."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable

from tmux_claude.errors import ParseError, PreferencesError
from tmux_claude.logging_utils import JsonlLogger, null_logger
from tmux_claude.storage import locked, read_json, write_json_atomic


SCHEMA_VERSION = 1
AUTO_APPROVE = "auto_approve"
MUTED = "muted"
SKIPPED = "skipped"
SESSION_FLAGS = (AUTO_APPROVE, MUTED, SKIPPED)


@dataclass(frozen=True)
class Preferences:
    auto_approve: frozenset[str] = frozenset()
    muted: frozenset[str] = frozenset()
    skipped: frozenset[str] = frozenset()
    global_mute: bool = False

    def has(self, flag: str, session_name: str) -> bool:
        return session_name in getattr(self, flag)

    def flags_for(self, session_name: str) -> tuple[str, ...]:
        return tuple(flag for flag in SESSION_FLAGS if self.has(flag, session_name))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"version": SCHEMA_VERSION, "global_mute": self.global_mute}
        for flag in SESSION_FLAGS:
            data[flag] = sorted(getattr(self, flag))
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Preferences:
        if not isinstance(data, dict):
            raise ParseError("preferences file must be an object")
        sets = {}
        for flag in SESSION_FLAGS:
            names = data.get(flag) or []
            if not isinstance(names, list):
                raise ParseError(f"'{flag}' must be a list of session names")
            sets[flag] = frozenset(str(n) for n in names if isinstance(n, str) and n)
        return cls(global_mute=bool(data.get("global_mute")), **sets)


def _locked_update(path: Path, update: Callable[[], Any]) -> Any:
    try:
        with locked(path):
            return update()
    except OSError as exc:
        raise PreferencesError(f"could not write {path.name}: {exc}") from exc


class PreferenceStore:
    """Toggles persisted as one JSON document; read-modify-write under the file lock."""

    def __init__(self, path: Path, logger: JsonlLogger | None = None) -> None:
        self.path = path
        self.logger = logger or null_logger("preferences")

    def load(self) -> Preferences:
        if not self.path.exists():
            return Preferences()
        try:
            return Preferences.from_dict(read_json(self.path))
        except (OSError, ValueError, ParseError) as exc:
            self.logger.event("warn", "preferences.load.corrupt", path=str(self.path), error=str(exc))
            return Preferences()

    def toggle(self, flag: str, session_name: str) -> bool:
        """Flip ``flag`` for ``session_name``; returns the new state."""
        if flag not in SESSION_FLAGS:
            raise ValueError(f"unknown session flag: {flag}")

        def _update() -> bool:
            prefs = self.load()
            names = set(getattr(prefs, flag))
            enabled = session_name not in names
            if enabled:
                names.add(session_name)
            else:
                names.discard(session_name)
            write_json_atomic(self.path, replace(prefs, **{flag: frozenset(names)}).to_dict())
            return enabled

        enabled = _locked_update(self.path, _update)
        self.logger.event("info", "preferences.toggle", flag=flag, session=session_name, enabled=enabled)
        return enabled

    def toggle_global_mute(self) -> bool:
        def _update() -> bool:
            prefs = self.load()
            write_json_atomic(self.path, replace(prefs, global_mute=not prefs.global_mute).to_dict())
            return not prefs.global_mute

        enabled = _locked_update(self.path, _update)
        self.logger.event("info", "preferences.global_mute", enabled=enabled)
        return enabled


class TodoStore:
    """Free-text todos per session name, kept in insertion order."""

    def __init__(self, path: Path, logger: JsonlLogger | None = None) -> None:
        self.path = path
        self.logger = logger or null_logger("todos")

    def load(self) -> dict[str, list[str]]:
        if not self.path.exists():
            return {}
        try:
            raw = read_json(self.path)
            todos = raw.get("todos") if isinstance(raw, dict) else None
            if not isinstance(todos, dict):
                raise ParseError("todos file must be an object with a 'todos' map")
        except (OSError, ValueError, ParseError) as exc:
            self.logger.event("warn", "todos.load.corrupt", path=str(self.path), error=str(exc))
            return {}
        return {
            str(name): [str(item) for item in items if isinstance(item, str)]
            for name, items in todos.items()
            if isinstance(items, list) and items
        }

    def _save(self, todos: dict[str, list[str]]) -> None:
        write_json_atomic(self.path, {"version": SCHEMA_VERSION, "todos": {k: v for k, v in sorted(todos.items()) if v}})

    def items(self, session_name: str) -> list[str]:
        return self.load().get(session_name, [])

    def add(self, session_name: str, text: str) -> list[str]:
        text = text.strip()
        if not text:
            return self.items(session_name)

        def _update() -> list[str]:
            todos = self.load()
            todos.setdefault(session_name, []).append(text)
            self._save(todos)
            return todos[session_name]

        items = _locked_update(self.path, _update)
        self.logger.event("info", "todos.add", session=session_name, count=len(items))
        return items

    def delete(self, session_name: str, index: int) -> list[str]:
        def _update() -> list[str]:
            todos = self.load()
            items = todos.get(session_name, [])
            if not 0 <= index < len(items):
                return items
            del items[index]
            self._save(todos)
            return items

        items = _locked_update(self.path, _update)
        self.logger.event("info", "todos.delete", session=session_name, index=index, count=len(items))
        return items
