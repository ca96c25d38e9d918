#!/usr/bin/env python3
"""Unix-socket daemon that turns assistant hook events into per-session status."""

from __future__ import annotations

import json
import os
import shutil
import socket
import socketserver
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

from tmux_claude import topology
from tmux_claude.config import Paths
from tmux_claude.errors import ParseError, TmuxClaudeError
from tmux_claude.logging_utils import JsonlLogger, null_logger
from tmux_claude.models import ClaudeStatus, HookEvent, HookKind, Session, StatusKind
from tmux_claude.preferences import PreferenceStore
from tmux_claude.status_detector import status_for_tool
from tmux_claude.storage import read_json, write_json_atomic


SAVE_INTERVAL_SECONDS = 60.0
PENDING_APPROVAL_TTL = 30.0
SESSION_RECORD_TTL = 4 * 3600.0
NOTIFY_TIMEOUT = 2.0

INPUT_DAEMON = "daemon"
INPUT_EXTERNAL = "external"
INPUT_UNKNOWN = "unknown"


class DaemonAlreadyRunning(TmuxClaudeError):
    pass


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    cwd: str
    status: ClaudeStatus
    input_source: str = INPUT_UNKNOWN
    last_activity: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "cwd": self.cwd,
            "status": self.status.to_dict(),
            "input_source": self.input_source,
            "last_activity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        session_id = data.get("session_id")
        cwd = data.get("cwd")
        status = data.get("status")
        if not isinstance(session_id, str) or not isinstance(cwd, str) or not isinstance(status, dict):
            raise ParseError("session record requires session_id, cwd and status")
        return cls(
            session_id=session_id,
            cwd=cwd,
            status=ClaudeStatus.from_dict(status),
            input_source=str(data.get("input_source") or INPUT_UNKNOWN),
            last_activity=float(data.get("last_activity") or 0.0),
        )


Listener = Callable[[SessionRecord, "SessionRecord | None"], None]


class DaemonState:
    """Per-session hook state.

    Writers serialise on one lock. After every write a fresh read-only copy
    of the map is published; ``snapshot()`` hands that copy out without
    taking the lock, so readers never block a hook delivery.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionRecord] = {}
        self._pending: dict[str, float] = {}
        self._published: Mapping[str, SessionRecord] = MappingProxyType({})
        self._listeners: list[Listener] = []
        self.started_at = clock()

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = [*self._listeners, listener]

    def snapshot(self) -> Mapping[str, SessionRecord]:
        return self._published

    def by_cwd(self) -> dict[str, SessionRecord]:
        """Latest record for every working directory."""
        result: dict[str, SessionRecord] = {}
        for record in self._published.values():
            current = result.get(record.cwd)
            if current is None or record.last_activity >= current.last_activity:
                result[record.cwd] = record
        return result

    def _publish(self) -> None:
        self._published = MappingProxyType(dict(self._sessions))

    def has_pending_approval(self, session_id: str) -> bool:
        return session_id in self._pending

    def mark_pending_approval(self, session_id: str) -> None:
        with self._lock:
            self._pending[session_id] = self._clock()

    def cleanup_old_approvals(self) -> int:
        """Drop aged-out pending approvals and sessions with no hook activity within SESSION_RECORD_TTL.

        Returns the number of session records evicted.
        """
        with self._lock:
            now = self._clock()
            cutoff = now - PENDING_APPROVAL_TTL
            self._pending = {sid: ts for sid, ts in self._pending.items() if ts >= cutoff}
            expired = [sid for sid, record in self._sessions.items() if record.last_activity < now - SESSION_RECORD_TTL]
            for sid in expired:
                del self._sessions[sid]
                self._pending.pop(sid, None)
            if expired:
                self._publish()
        return len(expired)

    def _next_status(self, event: HookEvent, now: float) -> ClaudeStatus | None:
        kind = event.kind
        if kind is HookKind.STOP:
            return ClaudeStatus(StatusKind.WAITING, now)
        if kind is HookKind.PRE_TOOL_USE:
            if event.tool_name == "ExitPlanMode":
                return ClaudeStatus(StatusKind.PLAN_REVIEW, now)
            if event.tool_name == "AskUserQuestion":
                return ClaudeStatus(StatusKind.QUESTION_ASKED, now)
            return ClaudeStatus(StatusKind.RUNNING, now)
        if kind is HookKind.PERMISSION_REQUEST:
            status = status_for_tool(event.tool_name, event.tool_input, now)
            if not status.accepts_approval:
                status = ClaudeStatus(StatusKind.NEEDS_PERMISSION, now, prompt=f"{event.tool_name or 'Tool'}: ...")
            return status
        if kind in (HookKind.POST_TOOL_USE, HookKind.USER_PROMPT_SUBMIT):
            return ClaudeStatus(StatusKind.RUNNING, now)
        return None

    def apply(self, event: HookEvent) -> SessionRecord:
        with self._lock:
            previous = self._sessions.get(event.session_id)
            now = self._clock()
            if previous is not None:
                # Recorded times never go backwards, even if the wall clock does.
                now = max(now, previous.last_activity, previous.status.timestamp)

            status = self._next_status(event, now)
            if status is None:
                status = previous.status if previous is not None else ClaudeStatus(StatusKind.IDLE)

            input_source = previous.input_source if previous is not None else INPUT_UNKNOWN
            if event.kind is HookKind.USER_PROMPT_SUBMIT:
                input_source = INPUT_DAEMON if event.session_id in self._pending else INPUT_EXTERNAL
            if event.kind in (HookKind.POST_TOOL_USE, HookKind.USER_PROMPT_SUBMIT):
                self._pending.pop(event.session_id, None)

            record = SessionRecord(
                session_id=event.session_id,
                cwd=event.cwd or (previous.cwd if previous is not None else ""),
                status=status,
                input_source=input_source,
                last_activity=now,
            )
            self._sessions[event.session_id] = record
            self._publish()
            listeners = self._listeners

        for listener in listeners:
            listener(record, previous)
        return record

    def to_dict(self) -> dict[str, Any]:
        sessions = self.snapshot()
        return {
            "sessions": [sessions[sid].to_dict() for sid in sorted(sessions)],
            "uptime_secs": int(max(0.0, self._clock() - self.started_at)),
        }

    def save(self, path: Path) -> None:
        write_json_atomic(path, {"version": 1, "sessions": [r.to_dict() for r in self.snapshot().values()]})

    def load(self, path: Path, logger: JsonlLogger | None = None) -> int:
        try:
            raw = read_json(path)
            items = raw.get("sessions") if isinstance(raw, dict) else None
            if not isinstance(items, list):
                raise ParseError("daemon state must contain a 'sessions' list")
            records = [SessionRecord.from_dict(item) for item in items if isinstance(item, dict)]
        except FileNotFoundError:
            return 0
        except (OSError, ValueError, ParseError) as exc:
            if logger is not None:
                logger.event("warn", "daemon.state.load_failed", path=str(path), error=str(exc))
            return 0
        cutoff = self._clock() - SESSION_RECORD_TTL
        fresh = [record for record in records if record.last_activity >= cutoff]
        with self._lock:
            for record in fresh:
                self._sessions.setdefault(record.session_id, record)
            self._publish()
        return len(fresh)


def notify_needs_attention(session_name: str, status_label: str) -> bool:
    """Desktop notification, falling back to a tmux status-line message."""
    title = "tmux-claude"
    message = f"{session_name}: {status_label}"
    commands: list[list[str]] = []
    if sys.platform == "darwin":
        script = 'display notification "{}" with title "{}"'.format(message.replace('"', '\\"'), title)
        commands.append(["osascript", "-e", script])
    elif shutil.which("notify-send"):
        commands.append(["notify-send", title, message])
    for cmd in commands:
        try:
            proc = subprocess.run(cmd, check=False, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=NOTIFY_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired):
            continue
        if proc.returncode == 0:
            return True
    return topology.display_message(message)


def session_mute_check(
    store: PreferenceStore,
    scan: Callable[[], list[Session]] = topology.scan_topology,
) -> Callable[[SessionRecord], bool]:
    """Muted when global mute is on, or when a muted tmux session has a pane in the record's cwd."""

    def _muted(record: SessionRecord) -> bool:
        prefs = store.load()
        if prefs.global_mute:
            return True
        if not prefs.muted:
            return False
        try:
            sessions = scan()
        except TmuxClaudeError:
            return False
        owners = {s.name for s in sessions if any(p.cwd == record.cwd for p in s.panes)}
        return bool(owners & prefs.muted)

    return _muted


def attention_notifier(
    notify: Callable[[str, str], bool] = notify_needs_attention,
    muted: Callable[[SessionRecord], bool] | None = None,
) -> Listener:
    def _listener(record: SessionRecord, previous: SessionRecord | None) -> None:
        if not record.status.needs_attention:
            return
        if previous is not None and previous.status.needs_attention and previous.status.kind is record.status.kind:
            return
        if muted is not None and muted(record):
            return
        notify(os.path.basename(record.cwd.rstrip("/")) or record.session_id, record.status.label)

    return _listener


def socket_is_live(path: Path, timeout: float = 0.5) -> bool:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(path))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def prepare_socket_path(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        return
    if socket_is_live(path):
        raise DaemonAlreadyRunning(f"a daemon is already listening on {path}")
    path.unlink()


class HookRequestHandler(socketserver.StreamRequestHandler):
    timeout = 5.0

    def handle(self) -> None:
        server: HookServer = self.server  # type: ignore[assignment]
        try:
            for raw in self.rfile:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                response = server.dispatch(line)
                self.wfile.write((json.dumps(response) + "\n").encode("utf-8"))
                self.wfile.flush()
        except OSError:
            # Hook senders hang up without reading the reply.
            return


class HookServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: Path, daemon: HookDaemon) -> None:
        self.hook_daemon = daemon
        super().__init__(str(socket_path), HookRequestHandler)

    def dispatch(self, line: str) -> dict[str, Any]:
        daemon = self.hook_daemon
        try:
            message = json.loads(line)
        except ValueError as exc:
            daemon.logger.event("warn", "daemon.message.malformed", error=str(exc))
            return {"error": f"malformed message: {exc}"}

        if message == "Ping":
            return {"pong": True}
        if message == "GetState":
            return {"state": daemon.state.to_dict()}
        if message == "Status":
            return {"status": daemon.status()}
        if message == "Shutdown":
            daemon.logger.event("info", "daemon.shutdown.requested")
            daemon.request_stop()
            return {"ok": True}
        if isinstance(message, dict) and isinstance(message.get("ApprovePermission"), dict):
            session_id = str(message["ApprovePermission"].get("session_id") or "")
            if session_id:
                daemon.state.mark_pending_approval(session_id)
            return {"ok": True}

        try:
            event = HookEvent.from_wire(message)
        except ParseError as exc:
            daemon.logger.event("warn", "daemon.message.rejected", error=str(exc))
            return {"error": str(exc)}
        record = daemon.state.apply(event)
        daemon.logger.event(
            "debug",
            "daemon.hook.applied",
            hook=event.kind.value,
            session_id=event.session_id,
            cwd=event.cwd,
            status=record.status.kind.value,
        )
        return {"ok": True}


class HookDaemon:
    """Owns the listening socket, the pid file and periodic state persistence."""

    def __init__(
        self,
        paths: Paths,
        state: DaemonState | None = None,
        logger: JsonlLogger | None = None,
        notify: Callable[[str, str], bool] | None = notify_needs_attention,
        save_interval: float = SAVE_INTERVAL_SECONDS,
    ) -> None:
        self.paths = paths
        self.socket_path = paths.socket
        self.state = state or DaemonState()
        self.logger = logger or null_logger("daemon")
        self.save_interval = save_interval
        self._server: HookServer | None = None
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._stopped = threading.Event()
        self._stop_lock = threading.Lock()
        if notify is not None:
            muted = session_mute_check(PreferenceStore(paths.preferences, self.logger))
            self.state.add_listener(attention_notifier(notify, muted))

    def status(self) -> dict[str, Any]:
        return {
            "running": True,
            "pid": os.getpid(),
            "session_count": len(self.state.snapshot()),
            "uptime_secs": int(max(0.0, time.time() - self.state.started_at)),
            "socket": str(self.socket_path),
        }

    def start(self) -> None:
        self.paths.root.mkdir(parents=True, exist_ok=True)
        prepare_socket_path(self.socket_path)
        loaded = self.state.load(self.paths.daemon_state, self.logger)
        self._server = HookServer(self.socket_path, self)
        os.chmod(self.socket_path, 0o600)
        self.paths.pid_file.write_text(str(os.getpid()), encoding="utf-8")

        serve = threading.Thread(target=self._server.serve_forever, kwargs={"poll_interval": 0.2}, name="hook-server", daemon=True)
        saver = threading.Thread(target=self._save_loop, name="hook-state-saver", daemon=True)
        self._threads = [serve, saver]
        for thread in self._threads:
            thread.start()
        self.logger.event("info", "daemon.started", socket=str(self.socket_path), restored_sessions=loaded)

    def _save_loop(self) -> None:
        while not self._stop_event.wait(self.save_interval):
            expired = self.state.cleanup_old_approvals()
            if expired:
                self.logger.event("info", "daemon.sessions.expired", count=expired)
            self._save_state()

    def _save_state(self) -> None:
        try:
            self.state.save(self.paths.daemon_state)
        except OSError as exc:
            self.logger.event("warn", "daemon.state.save_failed", error=str(exc))

    def request_stop(self) -> None:
        threading.Thread(target=self.stop, name="hook-daemon-stop", daemon=True).start()

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped.is_set():
                return
            self._stop_event.set()
            if self._server is not None:
                self._server.shutdown()
                self._server.server_close()
            self._save_state()
            try:
                self.socket_path.unlink()
            except FileNotFoundError:
                pass
            try:
                if self.paths.pid_file.read_text(encoding="utf-8").strip() == str(os.getpid()):
                    self.paths.pid_file.unlink()
            except OSError:
                pass
            self._stopped.set()
        self.logger.event("info", "daemon.stopped")

    def wait(self, poll: float = 1.0) -> None:
        while not self._stopped.wait(poll):
            pass

    @property
    def running(self) -> bool:
        return self._server is not None and not self._stopped.is_set()
