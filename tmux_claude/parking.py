#!/usr/bin/env python3
"""Parking registry: tear down live sessions and bring them back from sesh templates."""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Callable

from tmux_claude import topology
from tmux_claude.config import tmux_timeout
from tmux_claude.errors import NoTemplateMatch, NotParked, ParkError, ParseError, UnparkError
from tmux_claude.logging_utils import JsonlLogger, null_logger
from tmux_claude.models import ParkedSession
from tmux_claude.storage import locked, read_json, write_json_atomic


SCHEMA_VERSION = 1
SESH_CONNECT_TIMEOUT = 10.0


class SeshTemplates:
    """Session templates known to ``sesh``."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout if timeout is not None else tmux_timeout()

    def names(self) -> list[str]:
        return self._list()

    def projects(self) -> list[str]:
        """Configured projects only (sesh.toml), without zoxide history."""
        return self._list("--config")

    def _list(self, *flags: str) -> list[str]:
        try:
            proc = subprocess.run(
                ["sesh", "list", *flags],
                check=False,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return []
        if proc.returncode != 0:
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]

    def has(self, name: str) -> bool:
        return name in self.names()

    def connect(self, name: str) -> bool:
        try:
            proc = subprocess.run(
                ["sesh", "connect", name],
                check=False,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=SESH_CONNECT_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0


class ParkingRegistry:
    """Parked sessions persisted in a single JSON file.

    Every mutation is a locked read-modify-write followed by an atomic
    replace, so concurrent dashboards never lose each other's entries and a
    crash leaves either the previous or the new file on disk.
    """

    def __init__(
        self,
        path: Path,
        templates: SeshTemplates | None = None,
        kill_session: Callable[[str], bool] = topology.kill_session,
        logger: JsonlLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = path
        self.templates = templates or SeshTemplates()
        self.kill_session = kill_session
        self.logger = logger or null_logger("parking")
        self.clock = clock

    def _load(self) -> dict[str, ParkedSession]:
        if not self.path.exists():
            return {}
        try:
            raw = read_json(self.path)
            if not isinstance(raw, dict) or not isinstance(raw.get("parked"), list):
                raise ParseError("parked file must be an object with a 'parked' list")
            entries = [ParkedSession.from_dict(item) for item in raw["parked"] if isinstance(item, dict)]
        except (OSError, ValueError, ParseError) as exc:
            self.logger.event("warn", "parking.load.corrupt", path=str(self.path), error=str(exc))
            return {}
        return {entry.name: entry for entry in entries}

    def _save(self, entries: dict[str, ParkedSession]) -> None:
        payload = {
            "version": SCHEMA_VERSION,
            "parked": [entries[name].to_dict() for name in sorted(entries)],
        }
        write_json_atomic(self.path, payload)

    def entries(self) -> list[ParkedSession]:
        loaded = self._load()
        return [loaded[name] for name in sorted(loaded)]

    def is_parked(self, name: str) -> bool:
        return name in self._load()

    def park(self, session_name: str, note: str = "") -> ParkedSession:
        if not self.templates.has(session_name):
            raise NoTemplateMatch(session_name)
        entry = ParkedSession(name=session_name, template=session_name, parked_at=self.clock(), note=note.strip())
        try:
            with locked(self.path):
                entries = self._load()
                entries[session_name] = entry
                try:
                    self._save(entries)
                except OSError as exc:
                    raise ParkError(f"could not record parked session {session_name!r}: {exc}") from exc
                if not self.kill_session(session_name):
                    entries.pop(session_name, None)
                    try:
                        self._save(entries)
                    except OSError as exc:
                        self.logger.event("error", "parking.rollback_failed", session=session_name, error=str(exc))
                        raise ParkError(
                            f"tmux refused to kill session {session_name!r} and the parked entry could not be rolled back: {exc}"
                        ) from exc
                    raise ParkError(f"tmux refused to kill session {session_name!r}")
        except OSError as exc:
            raise ParkError(f"could not lock parked sessions: {exc}") from exc
        self.logger.event("info", "parking.park", session=session_name, template=entry.template)
        return entry

    def unpark(self, session_name: str) -> ParkedSession:
        try:
            with locked(self.path):
                entries = self._load()
                entry = entries.get(session_name)
                if entry is None:
                    raise NotParked(session_name)
                if not self.templates.connect(entry.template):
                    raise UnparkError(f"sesh could not restore {entry.template!r}")
                del entries[session_name]
                try:
                    self._save(entries)
                except OSError as exc:
                    self.logger.event("error", "parking.unpark.save_failed", session=session_name, error=str(exc))
                    raise UnparkError(f"restored {session_name!r} but could not update parked sessions: {exc}") from exc
        except OSError as exc:
            raise UnparkError(f"could not lock parked sessions: {exc}") from exc
        self.logger.event("info", "parking.unpark", session=session_name, template=entry.template)
        return entry

    def remove(self, session_name: str) -> ParkedSession:
        try:
            with locked(self.path):
                entries = self._load()
                entry = entries.pop(session_name, None)
                if entry is None:
                    raise NotParked(session_name)
                self._save(entries)
        except OSError as exc:
            raise ParkError(f"could not forget parked session {session_name!r}: {exc}") from exc
        self.logger.event("info", "parking.remove", session=session_name)
        return entry


def save_restorable(path: Path, session_names: list[str]) -> None:
    write_json_atomic(path, {"version": SCHEMA_VERSION, "sessions": sorted(set(session_names))})


def load_restorable(path: Path) -> list[str]:
    try:
        raw = read_json(path)
    except (OSError, ValueError):
        return []
    sessions = raw.get("sessions") if isinstance(raw, dict) else None
    if not isinstance(sessions, list):
        return []
    return [str(name) for name in sessions if isinstance(name, str) and name]
