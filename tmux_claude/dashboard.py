#!/usr/bin/env python3
"""Interactive tmux dashboard: session list, assistant status, approvals and parking."""

from __future__ import annotations

import collections
import contextlib
import os
import re
import select
import shutil
import sys
import termios
import time
import tty
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, TextIO

from tmux_claude import process_tree, status_detector, topology
from tmux_claude.errors import DiscoveryError, NoTemplateMatch, ParkingError, PreferencesError, SnapshotError, TmuxClaudeError
from tmux_claude.hook_client import DaemonClient
from tmux_claude.hook_daemon import HookDaemon, SessionRecord
from tmux_claude.logging_utils import JsonlLogger, null_logger
from tmux_claude.models import ClaudeStatus, ParkedSession, ProcessRecord, Session, StatusKind, format_age, format_memory
from tmux_claude.parking import ParkingRegistry
from tmux_claude.preferences import AUTO_APPROVE, MUTED, SKIPPED, Preferences, PreferenceStore, TodoStore


PERMISSION_KEYS = ("y", "z", "x", "w", "v", "t")
MESSAGE_TTL = 3.0
ULTRACOMPACT_CPU = 2.0
ULTRACOMPACT_MEM = 100 * 1024 * 1024
COMPACT_CPU = 10.0
COMPACT_MEM = 100 * 1024 * 1024

ANSI_RESET = "\x1b[0m"
ANSI_BOLD = "\x1b[1m"
ANSI_DIM = "\x1b[2m"
ANSI_REVERSE = "\x1b[7m"
ANSI_RED = "\x1b[31m"
ANSI_GREEN = "\x1b[32m"
ANSI_YELLOW = "\x1b[33m"
ANSI_MAGENTA = "\x1b[35m"
ANSI_CYAN = "\x1b[36m"
ANSI_GRAY = "\x1b[90m"
ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


class Mode(str, Enum):
    NORMAL = "normal"
    SESSION_DETAIL = "session_detail"
    PARKED_LIST = "parked_list"
    CONFIRM_EXIT = "confirm_exit"
    SEARCH = "search"
    PARK_NOTE = "park_note"
    ADD_TODO = "add_todo"


TEXT_INPUT_MODES = (Mode.PARK_NOTE, Mode.ADD_TODO, Mode.SEARCH)
FLAG_LABELS = {AUTO_APPROVE: "auto-approve", MUTED: "mute", SKIPPED: "skip"}
SEARCH_ACTIVE = "active"
SEARCH_PARKED = "parked"
SEARCH_PROJECT = "project"


@dataclass
class DashboardConfig:
    interval: float = 2.0
    filter: str = ""
    compact: bool = False
    ultracompact: bool = False
    popup: bool = False
    projects_root: Path | None = None
    open_detail: bool = False


@dataclass(frozen=True)
class SessionRow:
    session: Session
    permission_key: str | None = None


@dataclass(frozen=True)
class SearchResult:
    kind: str
    name: str
    note: str = ""
    status: ClaudeStatus | None = None


@dataclass(frozen=True)
class ViewModel:
    mode: Mode
    rows: tuple[SessionRow, ...] = ()
    selected: int | None = None
    detail: Session | None = None
    parked: tuple[ParkedSession, ...] = ()
    parked_selected: int = 0
    message: str = ""
    stale: bool = False
    awaiting_park: bool = False
    feed_label: str = "standalone"
    interval: float = 2.0
    compact: bool = False
    current_session: str | None = None
    now: float = 0.0
    color: bool = False
    todos: tuple[str, ...] = ()
    todo_selected: int = 0
    todo_counts: dict[str, int] = field(default_factory=dict)
    flags: dict[str, tuple[str, ...]] = field(default_factory=dict)
    global_mute: bool = False
    input_text: str = ""
    input_target: str = ""
    search_query: str = ""
    search_results: tuple[SearchResult, ...] = ()
    search_selected: int = 0


@dataclass
class Sources:
    """External inputs and side effects, swappable for tests."""

    scan: Callable[[], list[Session]] = topology.scan_topology
    snapshot: Callable[[], list[ProcessRecord]] = process_tree.take_snapshot
    detect: Callable[[str], ClaudeStatus] = status_detector.detect_status
    switch: Callable[[str], bool] = topology.switch_client
    send_keys: Callable[..., bool] = topology.send_keys
    current_session: Callable[[], str | None] = topology.current_session


class DaemonFeed:
    """No daemon: status comes from activity logs only."""

    label = "standalone"
    wake_fd: int | None = None

    def records(self) -> dict[str, SessionRecord]:
        return {}

    def drain(self) -> bool:
        return False

    def approved(self, cwd: str) -> None:
        pass

    def close(self) -> None:
        pass


class SocketFeed(DaemonFeed):
    """Polls an already running daemon with GetState once per tick."""

    label = "daemon"

    def __init__(self, client: DaemonClient, logger: JsonlLogger | None = None) -> None:
        self.client = client
        self.logger = logger or null_logger("dashboard")
        self._last: dict[str, SessionRecord] = {}

    def records(self) -> dict[str, SessionRecord]:
        try:
            self._last = self.client.get_state()
        except TmuxClaudeError as exc:
            self.logger.event("warn", "dashboard.daemon.poll_failed", error=str(exc))
        return self._last

    def approved(self, cwd: str) -> None:
        for record in self._last.values():
            if record.cwd == cwd:
                try:
                    self.client.approve(record.session_id)
                except TmuxClaudeError as exc:
                    self.logger.event("warn", "dashboard.daemon.approve_failed", error=str(exc))


class EmbeddedFeed(DaemonFeed):
    """Hosts the hook daemon in-process; each applied event wakes the UI loop through a pipe."""

    label = "embedded"

    def __init__(self, daemon: HookDaemon) -> None:
        self.daemon = daemon
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)
        self.wake_fd = self._read_fd
        daemon.state.add_listener(self._on_event)
        daemon.start()

    def _on_event(self, record: SessionRecord, previous: SessionRecord | None) -> None:
        try:
            os.write(self._write_fd, b"!")
        except (BlockingIOError, OSError):
            # A full pipe already guarantees a wake-up.
            pass

    def records(self) -> dict[str, SessionRecord]:
        return dict(self.daemon.state.snapshot())

    def drain(self) -> bool:
        woke = False
        while True:
            try:
                chunk = os.read(self._read_fd, 4096)
            except BlockingIOError:
                break
            if not chunk:
                break
            woke = True
        return woke

    def approved(self, cwd: str) -> None:
        record = self.daemon.state.by_cwd().get(cwd)
        if record is not None:
            self.daemon.state.mark_pending_approval(record.session_id)

    def close(self) -> None:
        self.daemon.stop()
        for fd in (self._read_fd, self._write_fd):
            with contextlib.suppress(OSError):
                os.close(fd)


def records_by_cwd(records: dict[str, SessionRecord]) -> dict[str, SessionRecord]:
    result: dict[str, SessionRecord] = {}
    for record in records.values():
        current = result.get(record.cwd)
        if current is None or record.last_activity >= current.last_activity:
            result[record.cwd] = record
    return result


def choose_status(polled: ClaudeStatus | None, pushed: ClaudeStatus | None) -> ClaudeStatus | None:
    """Newer timestamp wins; the daemon wins exact ties."""
    if pushed is None:
        return polled
    if polled is None:
        return pushed
    return pushed if pushed.timestamp >= polled.timestamp else polled


def merge_statuses(
    sessions: list[Session],
    polled: dict[str, ClaudeStatus],
    daemon_by_cwd: dict[str, SessionRecord],
    shown: dict[str, ClaudeStatus],
) -> list[Session]:
    """Attach a status to each session's assistant pane.

    A session with no detected assistant process borrows a daemon record by
    cwd only when no detected assistant pane anywhere already owns that cwd;
    otherwise a plain shell sharing the directory would get approval keys.
    """
    claimed = {p.cwd for s in sessions if s.claude_pane is not None for p in s.panes if p.pane_id == s.claude_pane}
    merged: list[Session] = []
    for session in sessions:
        pane_id = session.claude_pane
        if pane_id is None:
            known = next((p for p in session.panes if p.cwd in daemon_by_cwd and p.cwd not in claimed), None)
            pane_id = known.pane_id if known is not None else None
        if pane_id is None:
            merged.append(session)
            continue
        pane = next(p for p in session.panes if p.pane_id == pane_id)
        pushed = daemon_by_cwd.get(pane.cwd)
        status = choose_status(polled.get(session.name), pushed.status if pushed is not None else None)
        prior = shown.get(session.name)
        if status is None or (prior is not None and status.timestamp < prior.timestamp):
            status = prior
        merged.append(replace(session, claude_pane=pane_id, claude_status=status))
    return merged


def filter_and_sort(sessions: list[Session], config: DashboardConfig) -> list[Session]:
    pattern = config.filter.lower()
    visible = [s for s in sessions if not pattern or pattern in s.name.lower()]
    if config.ultracompact:
        visible = [
            s for s in visible if s.aggregate.cpu_percent > ULTRACOMPACT_CPU or s.aggregate.memory_bytes > ULTRACOMPACT_MEM
        ]
    return sorted(visible, key=lambda s: not s.has_claude)


def search_sessions(
    query: str,
    sessions: list[Session],
    parked: list[ParkedSession],
    projects: list[str],
) -> list[SearchResult]:
    """Case-insensitive substring match: live sessions, then parked ones, then idle sesh projects."""
    needle = query.lower()

    def _match(name: str) -> bool:
        return not needle or needle in name.lower()

    results = [SearchResult(SEARCH_ACTIVE, s.name, status=s.claude_status) for s in sessions if _match(s.name)]
    results += [SearchResult(SEARCH_PARKED, p.name, note=p.note) for p in parked if _match(p.name)]
    taken = {s.name for s in sessions} | {p.name for p in parked}
    results += [SearchResult(SEARCH_PROJECT, name) for name in projects if name not in taken and _match(name)]
    return results


def _colors_enabled() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    return bool(sys.stdout.isatty())


def _colorize(text: str, *codes: str, enabled: bool = True) -> str:
    if not text or not codes or not enabled:
        return text
    prefix = "".join(code for code in codes if code)
    if not prefix:
        return text
    return f"{prefix}{text}{ANSI_RESET}"


def _strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def _take_visible(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    out: list[str] = []
    visible = 0
    i = 0
    while i < len(text) and visible < limit:
        if text[i] == "\x1b":
            match = ANSI_RE.match(text, i)
            if match:
                out.append(match.group(0))
                i = match.end()
                continue
        out.append(text[i])
        visible += 1
        i += 1
    joined = "".join(out)
    if "\x1b[" in joined and not joined.endswith(ANSI_RESET):
        joined += ANSI_RESET
    return joined


def _fit_width(text: str, width: int) -> str:
    clean = str(text).replace("\n", " ").replace("\r", " ")
    if width <= 0:
        return ""
    if len(_strip_ansi(clean)) <= width:
        return clean
    if width <= 3:
        return _take_visible(clean, width)
    return _take_visible(clean, width - 3) + "..."


def _status_style(status: ClaudeStatus) -> tuple[str, ...]:
    if status.accepts_approval:
        return (ANSI_BOLD, ANSI_RED)
    if status.needs_attention:
        return (ANSI_BOLD, ANSI_MAGENTA)
    if status.kind is StatusKind.WAITING:
        return (ANSI_YELLOW,)
    if status.kind is StatusKind.RUNNING:
        return (ANSI_GREEN,)
    return (ANSI_GRAY,)


def _usage(cpu: float, mem: int) -> str:
    return f"{cpu:5.1f}% {format_memory(mem):>6}"


def _session_line(idx: int, row: SessionRow, view: ViewModel) -> str:
    session = row.session
    color = view.color
    agg = session.aggregate
    number = str(idx + 1) if idx < 9 else " "
    marker = ">" if view.selected == idx else " "
    todo_count = view.todo_counts.get(session.name, 0)
    name = session.name + (f" [{todo_count}]" if todo_count else "")
    line = f"{marker}{number} {name:<20} {_usage(agg.cpu_percent, agg.memory_bytes)}"
    flags = view.flags.get(session.name, ())
    if flags:
        line += " " + _colorize("(" + " ".join(FLAG_LABELS[f] for f in flags) + ")", ANSI_DIM, enabled=color)
    status = session.claude_status
    if status is not None:
        label = status.label
        if status.prompt:
            label += f": {status.prompt}"
        if status.timestamp:
            label += f" ({format_age(status.timestamp, view.now)})"
        key = f"[{row.permission_key}] " if row.permission_key else ""
        line += "  " + _colorize(key, ANSI_BOLD, ANSI_CYAN, enabled=color) + _colorize(label, *_status_style(status), enabled=color)
    if view.selected == idx:
        line = _colorize(_strip_ansi(line), ANSI_REVERSE, enabled=color)
    return line


def _normal_lines(view: ViewModel) -> list[str]:
    if not view.rows:
        return [_colorize("  no sessions", ANSI_DIM, enabled=view.color)]
    lines = [_session_line(idx, row, view) for idx, row in enumerate(view.rows)]
    descriptions = [
        f"    {row.session.name}: {row.session.claude_status.description}"
        for row in view.rows
        if row.permission_key and row.session.claude_status and row.session.claude_status.description
    ]
    return lines + [_colorize(d, ANSI_DIM, enabled=view.color) for d in descriptions]


def _detail_lines(view: ViewModel) -> list[str]:
    session = view.detail
    if session is None:
        return ["  session is gone"]
    color = view.color
    agg = session.aggregate
    lines = [_colorize(f"{session.name}  {_usage(agg.cpu_percent, agg.memory_bytes)}", ANSI_BOLD, enabled=color)]
    if session.claude_status is not None:
        status = session.claude_status
        text = status.label + (f": {status.prompt}" if status.prompt else "")
        lines.append("  assistant: " + _colorize(text, *_status_style(status), enabled=color))
        if status.description:
            lines.append(_colorize(f"    {status.description}", ANSI_DIM, enabled=color))
    flags = view.flags.get(session.name, ())
    if flags:
        lines.append("  " + _colorize(", ".join(FLAG_LABELS[f] for f in flags), ANSI_CYAN, enabled=color))
    lines.append(_colorize("  todos:", ANSI_BOLD, enabled=color))
    if not view.todos:
        lines.append(_colorize("    (no todos)", ANSI_DIM, enabled=color))
    for idx, todo in enumerate(view.todos):
        selected = idx == view.todo_selected
        text = f"  {'>' if selected else ' '} {chr(ord('a') + idx) if idx < 26 else ' '}. {todo}"
        lines.append(_colorize(text, ANSI_REVERSE, enabled=color) if selected else text)
    for window in session.windows:
        w_agg = window.aggregate
        lines.append(f"  window {window.index}: {window.name}  {_usage(w_agg.cpu_percent, w_agg.memory_bytes)}")
        for pane in window.panes:
            p_agg = pane.aggregate
            lines.append(f"    pane {pane.index} {pane.cwd}  {_usage(p_agg.cpu_percent, p_agg.memory_bytes)}")
            if pane.tree is None:
                lines.append(_colorize("      (process gone)", ANSI_DIM, enabled=color))
                continue
            for depth, node in pane.tree.walk():
                rec = node.record
                if view.compact and depth > 0 and rec.cpu_percent < COMPACT_CPU and rec.memory_bytes < COMPACT_MEM:
                    continue
                indent = "  " * depth
                lines.append(
                    f"      {indent}{rec.pid} {rec.name}  {_usage(rec.cpu_percent, rec.memory_bytes)}"
                    + _colorize(f"  [{_usage(node.aggregate.cpu_percent, node.aggregate.memory_bytes)}]", ANSI_DIM, enabled=color)
                )
    return lines


def _parked_lines(view: ViewModel) -> list[str]:
    if not view.parked:
        return [_colorize("  no parked sessions", ANSI_DIM, enabled=view.color)]
    lines: list[str] = []
    for idx, entry in enumerate(view.parked):
        marker = ">" if idx == view.parked_selected else " "
        note = f"  {entry.note}" if entry.note else ""
        line = f"{marker} {entry.name:<20} parked {format_age(entry.parked_at, view.now)} ago{note}"
        if idx == view.parked_selected:
            line = _colorize(line, ANSI_REVERSE, enabled=view.color)
        lines.append(line)
    return lines


def _search_lines(view: ViewModel) -> list[str]:
    if not view.search_results:
        return [_colorize("  no matches", ANSI_DIM, enabled=view.color)]
    lines: list[str] = []
    for idx, result in enumerate(view.search_results):
        selected = idx == view.search_selected
        if result.kind == SEARCH_ACTIVE:
            tag = f"[{result.status.label}]" if result.status is not None else ""
        else:
            tag = f"[{result.kind}]"
        text = f"{'>' if selected else ' '} {result.name} "
        lines.append((_colorize(text, ANSI_REVERSE, enabled=view.color) if selected else text) + _colorize(tag, ANSI_CYAN, enabled=view.color))
        if result.note:
            lines.append(_colorize(f"    -> {result.note}", ANSI_DIM, enabled=view.color))
    return lines


FOOTERS = {
    Mode.NORMAL: "[1-9] switch  [j/k] select  [Enter] switch  [d] detail  [y-t] approve (upper: always)  [P#] park  [U] parked  [/] search  [m] mute all  [R] refresh  [Q] quit",
    Mode.SESSION_DETAIL: "[a] add todo  [d] delete todo  [Enter] switch  [P] park  [!] auto-approve  [m] mute  [s] skip  [Esc] back  [q] quit",
    Mode.PARKED_LIST: "[j/k] select  [Enter] unpark  [x] remove  [U/Esc] back  [q] quit",
    Mode.CONFIRM_EXIT: "Quit tmux-claude? [y] yes  [any key] cancel",
    Mode.SEARCH: "/{text}_  [Up/Down] select  [Enter] open  [Esc] cancel",
    Mode.PARK_NOTE: "Note for {target}: {text}_  [Enter] park  [Esc] cancel",
    Mode.ADD_TODO: "Todo: {text}_  [Enter] add  [Esc] cancel",
}


def render_dashboard(view: ViewModel, width: int, height: int) -> str:
    """Render ``view`` to a screenful of text. Pure: no I/O, no clock, no globals."""
    color = view.color
    title = "tmux-claude" + (f" [{view.current_session}]" if view.current_session else "")
    header = (
        _colorize(title, ANSI_BOLD, enabled=color)
        + "  "
        + _colorize(f"[{view.feed_label}]", ANSI_DIM, ANSI_GREEN if view.feed_label != "standalone" else ANSI_GRAY, enabled=color)
        + f"  {view.interval:g}s refresh"
    )
    if view.stale:
        header += "  " + _colorize("(stale)", ANSI_YELLOW, enabled=color)
    if view.global_mute:
        header += "  " + _colorize("(muted)", ANSI_MAGENTA, enabled=color)

    if view.detail is not None or view.mode is Mode.SESSION_DETAIL:
        body = _detail_lines(view)
    elif view.mode is Mode.PARKED_LIST:
        body = [_colorize(f"Parked sessions ({len(view.parked)})", ANSI_BOLD, enabled=color)] + _parked_lines(view)
    elif view.mode is Mode.SEARCH:
        body = _search_lines(view)
    else:
        body = _normal_lines(view)

    footer = FOOTERS[view.mode]
    if view.mode in TEXT_INPUT_MODES:
        text = view.search_query if view.mode is Mode.SEARCH else view.input_text
        footer = footer.format(text=text, target=view.input_target)
    if view.awaiting_park:
        footer = "Park which session? [1-9]  [Esc] cancel"
    tail: list[str] = []
    if view.message:
        tail.append(_colorize(view.message, ANSI_YELLOW, enabled=color))
    tail.append(_colorize(footer, ANSI_DIM, ANSI_GRAY, enabled=color))

    room = max(0, height - 2 - len(tail))
    lines = [header, ""] + body[:room] + tail
    return "\n".join(_fit_width(line, width) for line in lines)


@contextlib.contextmanager
def _terminal_cbreak(fd: int | None):
    if fd is None or not os.isatty(fd):
        yield
        return
    old = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old)


def _decode_key_tokens(raw: str) -> list[str]:
    tokens: list[str] = []
    i = 0
    while i < len(raw):
        if raw.startswith(("\x1b[A", "\x1bOA"), i):
            tokens.append("UP")
            i += 3
            continue
        if raw.startswith(("\x1b[B", "\x1bOB"), i):
            tokens.append("DOWN")
            i += 3
            continue
        if raw.startswith("\x1b[", i):
            # Unhandled CSI sequence: skip through its final byte.
            j = i + 2
            while j < len(raw) and not ("@" <= raw[j] <= "~"):
                j += 1
            i = j + 1
            continue
        ch = raw[i]
        if ch == "\x1b":
            tokens.append("ESC")
        elif ch in ("\r", "\n"):
            tokens.append("ENTER")
        elif ch == "\x03":
            tokens.append("CTRL_C")
        elif ch in ("\x7f", "\x08"):
            tokens.append("BACKSPACE")
        elif ch.isprintable():
            tokens.append(ch)
        i += 1
    return tokens


class Dashboard:
    """Dashboard controller: owns the view state and applies ticks, pushes and keys in order.

    Preferences and todos are stored beside the parked-sessions file unless
    explicit stores are given.
    """

    def __init__(
        self,
        config: DashboardConfig,
        registry: ParkingRegistry,
        feed: DaemonFeed | None = None,
        sources: Sources | None = None,
        logger: JsonlLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall: Callable[[], float] = time.time,
        preferences: PreferenceStore | None = None,
        todos: TodoStore | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.feed = feed or DaemonFeed()
        self.sources = sources or Sources(detect=lambda cwd: status_detector.detect_status(cwd, config.projects_root))
        self.logger = logger or null_logger("dashboard")
        self.clock = clock
        self.wall = wall
        self.preferences = preferences or PreferenceStore(registry.path.with_name("preferences.json"), self.logger)
        self.todo_store = todos or TodoStore(registry.path.with_name("todos.json"), self.logger)

        self.mode = Mode.NORMAL
        self.running = True
        self.selected: int | None = None
        self.detail_name: str | None = None
        self.parked: list[ParkedSession] = []
        self.parked_selected = 0
        self.awaiting_park = False
        self.stale = False
        self.current_session: str | None = None
        self.prefs = Preferences()
        self.todos: dict[str, list[str]] = {}
        self.todo_selected = 0
        self.input_text = ""
        self.search_query = ""
        self.search_results: list[SearchResult] = []
        self.search_selected = 0

        self._raw: list[Session] = []
        self._polled: dict[str, ClaudeStatus] = {}
        self._shown: dict[str, ClaudeStatus] = {}
        self.rows: list[SessionRow] = []
        self._key_map: dict[str, str] = {}
        self._pending_approvals: set[str] = set()
        self._message = ""
        self._message_expires = 0.0
        self._tokens: collections.deque[str] = collections.deque()
        self._next_tick = 0.0
        self._park_target: str | None = None
        self._input_return = Mode.NORMAL
        self._projects: list[str] = []
        self._auto_detail = config.open_detail

    # -- state updates -------------------------------------------------

    def set_message(self, text: str) -> None:
        self._message = text
        self._message_expires = self.clock() + MESSAGE_TTL

    @property
    def message(self) -> str:
        if self._message and self.clock() >= self._message_expires:
            self._message = ""
        return self._message

    def refresh(self) -> None:
        """One timer tick: re-scan tmux and processes, re-read logs, merge the daemon map."""
        try:
            topology_now = self.sources.scan()
            records = self.sources.snapshot() if topology_now else []
        except (DiscoveryError, SnapshotError) as exc:
            self.stale = True
            self.set_message(f"refresh failed: {exc}")
            self.logger.event("warn", "dashboard.refresh.failed", error=str(exc), error_type=type(exc).__name__)
            return
        self._raw = process_tree.aggregate_topology(topology_now, records)
        self._polled = {}
        for session in self._raw:
            if session.claude_pane is None:
                continue
            pane = next(p for p in session.panes if p.pane_id == session.claude_pane)
            self._polled[session.name] = self.sources.detect(pane.cwd)
        self.current_session = self.sources.current_session()
        self.prefs = self.preferences.load()
        self.todos = self.todo_store.load()
        self.stale = False
        self._rebuild(self.feed.records())
        self.logger.event("debug", "dashboard.refresh", sessions=len(self._raw), shown=len(self.rows))
        if self._auto_detail:
            self._auto_detail = False
            self._open_current_detail()

    def apply_daemon_push(self) -> None:
        self._rebuild(self.feed.records())

    def _rebuild(self, daemon_records: dict[str, SessionRecord]) -> None:
        merged = merge_statuses(self._raw, self._polled, records_by_cwd(daemon_records), self._shown)
        self._shown = {s.name: s.claude_status for s in merged if s.claude_status is not None}
        visible = filter_and_sort(merged, self.config)
        self.rows = self._assign_permission_keys(visible)
        if self.selected is not None:
            self.selected = min(self.selected, len(self.rows) - 1) if self.rows else None
        if self.mode is Mode.SEARCH:
            self._update_search()
        self._auto_approve()

    def _assign_permission_keys(self, sessions: list[Session]) -> list[SessionRow]:
        def _approvable(s: Session) -> bool:
            return s.claude_status is not None and s.claude_status.accepts_approval

        self._pending_approvals = {name for name in self._pending_approvals if any(s.name == name and _approvable(s) for s in sessions)}
        needing = {s.name for s in sessions if _approvable(s) and s.name not in self._pending_approvals}
        self._key_map = {name: key for name, key in self._key_map.items() if name in needing}
        free = [k for k in PERMISSION_KEYS if k not in self._key_map.values()]
        rows: list[SessionRow] = []
        for session in sessions:
            key = self._key_map.get(session.name)
            if key is None and session.name in needing and free:
                key = free.pop(0)
                self._key_map[session.name] = key
            rows.append(SessionRow(session, key))
        return rows

    def view(self) -> ViewModel:
        detail = None
        if self._showing_detail():
            detail = next((r.session for r in self.rows if r.session.name == self.detail_name), None)
        return ViewModel(
            mode=self.mode,
            rows=tuple(self.rows),
            selected=self.selected,
            detail=detail,
            parked=tuple(self.parked),
            parked_selected=self.parked_selected,
            message=self.message,
            stale=self.stale,
            awaiting_park=self.awaiting_park,
            feed_label=self.feed.label,
            interval=self.config.interval,
            compact=self.config.compact,
            current_session=self.current_session,
            now=self.wall(),
            color=_colors_enabled(),
            todos=tuple(self.todos.get(self.detail_name, [])) if detail is not None else (),
            todo_selected=self.todo_selected,
            todo_counts={name: len(items) for name, items in self.todos.items()},
            flags={r.session.name: self.prefs.flags_for(r.session.name) for r in self.rows},
            global_mute=self.prefs.global_mute,
            input_text=self.input_text,
            input_target=self._park_target or "",
            search_query=self.search_query,
            search_results=tuple(self.search_results),
            search_selected=self.search_selected,
        )

    def _showing_detail(self) -> bool:
        if self.mode in (Mode.SESSION_DETAIL, Mode.ADD_TODO):
            return True
        return self.mode is Mode.PARK_NOTE and self._input_return is Mode.SESSION_DETAIL

    # -- actions -------------------------------------------------------

    def _session_at(self, idx: int) -> Session | None:
        return self.rows[idx].session if 0 <= idx < len(self.rows) else None

    def _switch(self, session: Session | None) -> None:
        if session is None:
            return
        if not self.sources.switch(session.name):
            self.set_message(f"could not switch to {session.name}")
            return
        self.logger.event("info", "dashboard.switch", session=session.name)
        if self.config.popup:
            self.running = False

    def _send_approval(self, session: Session, always: bool) -> bool:
        if session.claude_pane is None:
            return False
        if not self.sources.send_keys(session.claude_pane, "2" if always else "1", "Enter"):
            self.set_message(f"could not send approval to {session.name}")
            return False
        self._pending_approvals.add(session.name)
        pane = next((p for p in session.panes if p.pane_id == session.claude_pane), None)
        if pane is not None:
            self.feed.approved(pane.cwd)
        return True

    def _approve(self, letter: str) -> None:
        row = next((r for r in self.rows if r.permission_key == letter.lower()), None)
        if row is None:
            return
        session = row.session
        status = session.claude_status
        if status is None or not status.accepts_approval:
            return
        always = letter.isupper() and status.has_approve_always
        if not self._send_approval(session, always):
            return
        self.rows = self._assign_permission_keys([r.session for r in self.rows])
        self.set_message(f"approved {session.name}" + (" (always)" if always else ""))
        self.logger.event("info", "dashboard.approve", session=session.name, always=always, prompt=status.prompt)

    def _auto_approve(self) -> None:
        due = [
            r.session
            for r in self.rows
            if self.prefs.has(AUTO_APPROVE, r.session.name)
            and r.session.claude_status is not None
            and r.session.claude_status.accepts_approval
            and r.session.name not in self._pending_approvals
        ]
        approved = [s for s in due if self._send_approval(s, always=False)]
        if not approved:
            return
        self.rows = self._assign_permission_keys([r.session for r in self.rows])
        self.set_message("auto-approved " + ", ".join(s.name for s in approved))
        for session in approved:
            self.logger.event("info", "dashboard.auto_approve", session=session.name, prompt=session.claude_status.prompt)

    def _start_park(self, session: Session | None) -> None:
        if session is None:
            return
        if not self.registry.templates.has(session.name):
            self.set_message(str(NoTemplateMatch(session.name)))
            return
        self._park_target = session.name
        self._input_return = self.mode
        self.input_text = ""
        self.mode = Mode.PARK_NOTE

    def _finish_park(self) -> None:
        name, note = self._park_target, self.input_text
        self._park_target = None
        self.input_text = ""
        self.mode = self._input_return
        if name is None:
            return
        try:
            self.registry.park(name, note=note)
        except ParkingError as exc:
            self.set_message(str(exc))
            return
        self.set_message(f"parked {name}")
        if self.mode is Mode.SESSION_DETAIL:
            self.mode = Mode.NORMAL
        self.refresh()

    def _cancel_input(self) -> None:
        self._park_target = None
        self.input_text = ""
        self.mode = self._input_return

    def _open_parked(self) -> None:
        self.parked = self.registry.entries()
        self.parked_selected = 0
        self.mode = Mode.PARKED_LIST

    def _unpark_selected(self) -> None:
        if not self.parked:
            return
        entry = self.parked[self.parked_selected]
        try:
            self.registry.unpark(entry.name)
        except ParkingError as exc:
            self.set_message(str(exc))
            return
        self.set_message(f"unparked {entry.name}")
        self.mode = Mode.NORMAL
        self.refresh()

    def _remove_selected(self) -> None:
        if not self.parked:
            return
        entry = self.parked[self.parked_selected]
        try:
            self.registry.remove(entry.name)
        except ParkingError as exc:
            self.set_message(str(exc))
        self.parked = self.registry.entries()
        self.parked_selected = min(self.parked_selected, max(0, len(self.parked) - 1))

    def _open_detail(self, name: str) -> None:
        self.detail_name = name
        self.todo_selected = 0
        self.mode = Mode.SESSION_DETAIL

    def _open_current_detail(self) -> None:
        current = self.current_session
        if current is None:
            self.set_message("could not detect the current tmux session")
        elif not any(r.session.name == current for r in self.rows):
            self.set_message(f"session {current!r} is not in the list")
        else:
            self._open_detail(current)

    def _toggle_flag(self, flag: str, name: str | None) -> None:
        if name is None:
            return
        try:
            enabled = self.preferences.toggle(flag, name)
        except PreferencesError as exc:
            self.set_message(str(exc))
            return
        self.prefs = self.preferences.load()
        self.set_message(f"{FLAG_LABELS[flag]} {'on' if enabled else 'off'} for {name}")
        if flag == AUTO_APPROVE and enabled:
            self._auto_approve()

    def _toggle_global_mute(self) -> None:
        try:
            enabled = self.preferences.toggle_global_mute()
        except PreferencesError as exc:
            self.set_message(str(exc))
            return
        self.prefs = self.preferences.load()
        self.set_message("notifications muted" if enabled else "notifications unmuted")

    def _add_todo(self) -> None:
        name, text = self.detail_name, self.input_text
        self.input_text = ""
        self.mode = Mode.SESSION_DETAIL
        if name is None or not text.strip():
            return
        try:
            self.todos[name] = self.todo_store.add(name, text)
        except PreferencesError as exc:
            self.set_message(str(exc))

    def _delete_todo(self) -> None:
        name = self.detail_name
        if name is None or not 0 <= self.todo_selected < len(self.todos.get(name, [])):
            return
        try:
            remaining = self.todo_store.delete(name, self.todo_selected)
        except PreferencesError as exc:
            self.set_message(str(exc))
            return
        self.todos[name] = remaining
        self.todo_selected = min(self.todo_selected, max(0, len(remaining) - 1))

    def _start_search(self) -> None:
        self._projects = self.registry.templates.projects()
        self.parked = self.registry.entries()
        self.search_query = ""
        self.search_selected = 0
        self.mode = Mode.SEARCH
        self._update_search()

    def _update_search(self) -> None:
        self.search_results = search_sessions(self.search_query, [r.session for r in self.rows], self.parked, self._projects)
        if self.search_selected >= len(self.search_results):
            self.search_selected = 0

    def _open_search_result(self) -> None:
        result = self.search_results[self.search_selected] if self.search_results else None
        self.search_query = ""
        self.search_results = []
        self.mode = Mode.NORMAL
        if result is None:
            return
        if result.kind == SEARCH_ACTIVE:
            self._open_detail(result.name)
        elif result.kind == SEARCH_PARKED:
            self._open_parked()
            self.parked_selected = next((i for i, e in enumerate(self.parked) if e.name == result.name), 0)
        elif self.registry.templates.connect(result.name):
            self.logger.event("info", "dashboard.connect", session=result.name)
            self.set_message(f"connected {result.name}")
            if self.config.popup:
                self.running = False
            else:
                self.refresh()
        else:
            self.set_message(f"could not connect to {result.name}")

    def _move(self, step: int) -> None:
        if not self.rows:
            return
        if self.selected is None:
            self.selected = 0
            return
        self.selected = min(max(self.selected + step, 0), len(self.rows) - 1)

    # -- key handling --------------------------------------------------

    def handle_token(self, token: str) -> None:
        if token == "CTRL_C" and self.mode is not Mode.CONFIRM_EXIT:
            self.mode = Mode.CONFIRM_EXIT
            self.awaiting_park = False
            self._park_target = None
            self.input_text = ""
            return
        handler = {
            Mode.NORMAL: self._key_normal,
            Mode.SESSION_DETAIL: self._key_detail,
            Mode.PARKED_LIST: self._key_parked,
            Mode.CONFIRM_EXIT: self._key_confirm,
            Mode.SEARCH: self._key_search,
            Mode.PARK_NOTE: self._key_park_note,
            Mode.ADD_TODO: self._key_add_todo,
        }[self.mode]
        handler(token)

    def _key_normal(self, token: str) -> None:
        if self.awaiting_park:
            self.awaiting_park = False
            if token.isdigit() and token != "0":
                self._start_park(self._session_at(int(token) - 1))
            return
        if token.isdigit() and token != "0":
            self._switch(self._session_at(int(token) - 1))
        elif token in ("j", "DOWN"):
            self._move(1)
        elif token in ("k", "UP"):
            self._move(-1)
        elif token == "ENTER":
            if self.selected is not None:
                self._switch(self._session_at(self.selected))
        elif token == "d":
            session = self._session_at(self.selected if self.selected is not None else 0)
            if session is not None:
                self._open_detail(session.name)
        elif token.lower() in PERMISSION_KEYS:
            self._approve(token)
        elif token in ("P", "p"):
            self.awaiting_park = True
        elif token in ("U", "u"):
            self._open_parked()
        elif token in ("R", "r"):
            self.refresh()
        elif token in ("Q", "q"):
            self.running = False
        elif token in ("m", "M"):
            self._toggle_global_mute()
        elif token == "/":
            self._start_search()
        elif token == "ESC":
            if self.config.popup:
                self.running = False
            else:
                self.selected = None

    def _key_detail(self, token: str) -> None:
        session = next((r.session for r in self.rows if r.session.name == self.detail_name), None)
        todo_count = len(self.todos.get(self.detail_name or "", []))
        if token == "ESC":
            self.mode = Mode.NORMAL
        elif token == "ENTER":
            self._switch(session)
        elif token in ("P", "p"):
            self._start_park(session)
        elif token in ("a", "A"):
            self.input_text = ""
            self.mode = Mode.ADD_TODO
        elif token in ("d", "D", "BACKSPACE"):
            self._delete_todo()
        elif token in ("j", "DOWN"):
            self.todo_selected = min(self.todo_selected + 1, max(0, todo_count - 1))
        elif token in ("k", "UP"):
            self.todo_selected = max(self.todo_selected - 1, 0)
        elif token == "!":
            self._toggle_flag(AUTO_APPROVE, self.detail_name)
        elif token in ("m", "M"):
            self._toggle_flag(MUTED, self.detail_name)
        elif token in ("s", "S"):
            self._toggle_flag(SKIPPED, self.detail_name)
        elif token in ("q", "Q"):
            self.running = False

    def _key_parked(self, token: str) -> None:
        if token in ("ESC", "U", "u"):
            self.mode = Mode.NORMAL
        elif token in ("j", "DOWN") and self.parked:
            self.parked_selected = min(self.parked_selected + 1, len(self.parked) - 1)
        elif token in ("k", "UP"):
            self.parked_selected = max(self.parked_selected - 1, 0)
        elif token == "ENTER":
            self._unpark_selected()
        elif token == "x":
            self._remove_selected()
        elif token in ("q", "Q"):
            self.running = False

    def _key_confirm(self, token: str) -> None:
        if token in ("y", "Y"):
            self.running = False
        else:
            self.mode = Mode.NORMAL

    def _edit_text(self, text: str, token: str) -> str:
        if token == "BACKSPACE":
            return text[:-1]
        if len(token) == 1:
            return text + token
        return text

    def _key_search(self, token: str) -> None:
        if token == "ESC":
            self.search_query = ""
            self.search_results = []
            self.mode = Mode.NORMAL
        elif token == "ENTER":
            self._open_search_result()
        elif token == "UP":
            self.search_selected = max(self.search_selected - 1, 0)
        elif token == "DOWN":
            self.search_selected = min(self.search_selected + 1, max(0, len(self.search_results) - 1))
        else:
            self.search_query = self._edit_text(self.search_query, token)
            self._update_search()

    def _key_park_note(self, token: str) -> None:
        if token == "ESC":
            self._cancel_input()
        elif token == "ENTER":
            self._finish_park()
        else:
            self.input_text = self._edit_text(self.input_text, token)

    def _key_add_todo(self, token: str) -> None:
        if token == "ESC":
            self.input_text = ""
            self.mode = Mode.SESSION_DETAIL
        elif token == "ENTER":
            self._add_todo()
        else:
            self.input_text = self._edit_text(self.input_text, token)

    # -- loop ----------------------------------------------------------

    def _render(self, out: TextIO) -> None:
        term = shutil.get_terminal_size((100, 30))
        out.write("\x1b[2J\x1b[H")
        out.write(render_dashboard(self.view(), term.columns, term.lines) + "\n")
        out.flush()

    def step(self, input_fd: int | None) -> None:
        """Process exactly one of: a buffered key, a timer tick, a key read, or a daemon push."""
        if self._tokens:
            self.handle_token(self._tokens.popleft())
            return
        timeout = self._next_tick - self.clock()
        if timeout <= 0:
            self.refresh()
            self._next_tick = self.clock() + self.config.interval
            return
        fds = [fd for fd in (input_fd, self.feed.wake_fd) if fd is not None]
        if not fds:
            time.sleep(timeout)
            return
        try:
            ready, _, _ = select.select(fds, [], [], timeout)
        except KeyboardInterrupt:
            self._tokens.append("CTRL_C")
            return
        if input_fd is not None and input_fd in ready:
            raw = os.read(input_fd, 64)
            if not raw:
                raise EOFError("input closed")
            self._tokens.extend(_decode_key_tokens(raw.decode("utf-8", errors="ignore")))
            if self._tokens:
                self.handle_token(self._tokens.popleft())
            return
        if self.feed.wake_fd is not None and self.feed.wake_fd in ready and self.feed.drain():
            self.apply_daemon_push()

    def run(self, input_fd: int | None = None, out: TextIO | None = None) -> int:
        out = out or sys.stdout
        if input_fd is None and sys.stdin.isatty():
            input_fd = sys.stdin.fileno()
        self.logger.event("info", "dashboard.start", feed=self.feed.label, popup=self.config.popup, interval=self.config.interval)
        try:
            with _terminal_cbreak(input_fd):
                while self.running:
                    try:
                        self._render(out)
                        self.step(input_fd)
                    except KeyboardInterrupt:
                        self._tokens.append("CTRL_C")
                    except EOFError:
                        input_fd = None
        finally:
            self.logger.event("info", "dashboard.stop")
        return 0

    def live_session_names(self) -> list[str]:
        return [s.name for s in self._raw]
