#!/usr/bin/env python3
"""tmux session/window/pane discovery and the tmux verbs the dashboard issues."""

from __future__ import annotations

import subprocess

from tmux_claude.config import tmux_timeout
from tmux_claude.errors import DiscoveryError
from tmux_claude.models import Pane, Session, Window


PANE_FIELDS = (
    "#{session_name}",
    "#{window_index}",
    "#{window_name}",
    "#{pane_index}",
    "#{pane_id}",
    "#{pane_pid}",
    "#{pane_current_path}",
)
PANE_FORMAT = "\t".join(PANE_FIELDS)

NO_SERVER_MARKERS = ("no server running", "no sessions", "error connecting to", "no such file or directory")


def _tmux(args: list[str], check: bool = True, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["tmux", *args],
        check=check,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        timeout=timeout if timeout is not None else tmux_timeout(),
    )


def _int_field(value: str, field: str, lineno: int) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise DiscoveryError(f"line {lineno}: {field} is not an integer: {value!r}") from exc


def parse_pane_listing(text: str) -> list[Session]:
    """Parse ``list-panes -a -F PANE_FORMAT`` output into sessions.

    Rows are grouped in the order tmux reports them. Any row with the wrong
    number of fields or a non-numeric index/pid raises DiscoveryError; the
    whole listing is rejected rather than partially trusted.
    """
    order: list[str] = []
    windows: dict[str, dict[int, tuple[str, list[Pane]]]] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) != len(PANE_FIELDS):
            raise DiscoveryError(f"line {lineno}: expected {len(PANE_FIELDS)} fields, got {len(parts)}")
        session_name, window_index, window_name, pane_index, pane_id, pane_pid, cwd = parts
        if not session_name:
            raise DiscoveryError(f"line {lineno}: empty session name")
        w_idx = _int_field(window_index, "window_index", lineno)
        pane = Pane(
            index=_int_field(pane_index, "pane_index", lineno),
            pane_id=pane_id,
            pid=_int_field(pane_pid, "pane_pid", lineno),
            cwd=cwd,
        )
        if session_name not in windows:
            order.append(session_name)
            windows[session_name] = {}
        bucket = windows[session_name].setdefault(w_idx, (window_name, []))
        bucket[1].append(pane)

    sessions: list[Session] = []
    for name in order:
        built = tuple(Window(index=idx, name=title, panes=tuple(panes)) for idx, (title, panes) in windows[name].items())
        sessions.append(Session(name=name, windows=built))
    return sessions


def _list(args: list[str], timeout: float | None) -> str | None:
    """stdout of a tmux listing command; None when no server is running."""
    what = args[0]
    try:
        proc = _tmux(args, check=False, timeout=timeout)
    except FileNotFoundError as exc:
        raise DiscoveryError("tmux executable not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise DiscoveryError(f"tmux {what} timed out after {exc.timeout}s") from exc
    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        if any(marker in stderr.lower() for marker in NO_SERVER_MARKERS):
            return None
        raise DiscoveryError(f"tmux {what} failed ({proc.returncode}): {stderr}")
    return proc.stdout


def scan_topology(timeout: float | None = None) -> list[Session]:
    listing = _list(["list-panes", "-a", "-F", PANE_FORMAT], timeout)
    return parse_pane_listing(listing) if listing is not None else []


def list_session_names(timeout: float | None = None) -> list[str]:
    """Session names in tmux's own order, which is what session cycling walks."""
    listing = _list(["list-sessions", "-F", "#{session_name}"], timeout)
    if listing is None:
        return []
    return [line.strip() for line in listing.splitlines() if line.strip()]


def _run_quiet(args: list[str]) -> bool:
    try:
        return _tmux(args, check=False).returncode == 0
    except (OSError, subprocess.TimeoutExpired):
        return False


def switch_client(session_name: str) -> bool:
    return _run_quiet(["switch-client", "-t", session_name])


def kill_session(session_name: str) -> bool:
    return _run_quiet(["kill-session", "-t", session_name])


def send_keys(target: str, *keys: str) -> bool:
    return _run_quiet(["send-keys", "-t", target, *keys])


def display_message(message: str, duration_ms: int = 3000) -> bool:
    return _run_quiet(["display-message", "-d", str(duration_ms), message])


def current_session() -> str | None:
    try:
        proc = _tmux(["display-message", "-p", "#{session_name}"], check=False)
    except (OSError, subprocess.TimeoutExpired):
        return None
    name = proc.stdout.strip()
    return name if proc.returncode == 0 and name else None
