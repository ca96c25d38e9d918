#!/usr/bin/env python3
"""Hook forwarder and request/response client for the hook daemon socket."""

from __future__ import annotations

import json
import socket
from pathlib import Path
from typing import Any

from tmux_claude.errors import ParseError, TmuxClaudeError
from tmux_claude.hook_daemon import SessionRecord
from tmux_claude.models import HookEvent, HookKind


FORWARD_TIMEOUT = 1.0
CLIENT_TIMEOUT = 1.0


def _first_str(payload: dict[str, Any], *keys: str, default: str = "") -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return default


def build_hook_event(kind: str, payload: Any) -> HookEvent:
    """Normalise the JSON an assistant hook receives on stdin into a HookEvent."""
    try:
        hook_kind = HookKind(kind)
    except ValueError as exc:
        raise ParseError(f"unknown hook kind: {kind!r}") from exc
    if not isinstance(payload, dict):
        payload = {}
    tool = payload.get("tool") if isinstance(payload.get("tool"), dict) else {}
    tool_name = _first_str(payload, "tool_name", "toolName") or _first_str(tool, "name")
    tool_input = payload.get("tool_input", payload.get("toolInput", tool.get("input")))
    return HookEvent(
        kind=hook_kind,
        session_id=_first_str(payload, "session_id", "sessionId", default="unknown"),
        cwd=_first_str(payload, "cwd", "projectPath", default="/"),
        tool_name=tool_name,
        tool_input=tool_input if isinstance(tool_input, dict) else {},
        message=_first_str(payload, "message"),
    )


def _exchange(socket_path: Path, message: Any, timeout: float, want_reply: bool) -> dict[str, Any] | None:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(socket_path))
        sock.sendall((json.dumps(message) + "\n").encode("utf-8"))
        if not want_reply:
            return None
        buf = b""
        while b"\n" not in buf:
            chunk = sock.recv(65536)
            if not chunk:
                break
            buf += chunk
    finally:
        sock.close()
    line = buf.split(b"\n", 1)[0].strip()
    if not line:
        raise TmuxClaudeError("daemon closed the connection without replying")
    reply = json.loads(line)
    if not isinstance(reply, dict):
        raise TmuxClaudeError(f"unexpected daemon reply: {reply!r}")
    return reply


def send_hook_event(event: HookEvent, socket_path: Path, timeout: float = FORWARD_TIMEOUT) -> bool:
    """Fire-and-forget delivery. Never raises; False means the event was dropped."""
    if not socket_path.exists():
        return False
    try:
        _exchange(socket_path, event.to_wire(), timeout, want_reply=False)
    except (OSError, ValueError, TmuxClaudeError):
        return False
    return True


def forward_hook(kind: str, stdin_text: str, socket_path: Path, timeout: float = FORWARD_TIMEOUT) -> bool:
    if not socket_path.exists():
        return False
    try:
        payload = json.loads(stdin_text) if stdin_text.strip() else {}
        event = build_hook_event(kind, payload)
    except (ValueError, ParseError):
        return False
    return send_hook_event(event, socket_path, timeout)


class DaemonClient:
    def __init__(self, socket_path: Path, timeout: float = CLIENT_TIMEOUT) -> None:
        self.socket_path = socket_path
        self.timeout = timeout

    def request(self, message: Any) -> dict[str, Any]:
        try:
            reply = _exchange(self.socket_path, message, self.timeout, want_reply=True)
        except (OSError, ValueError) as exc:
            raise TmuxClaudeError(f"daemon request failed: {exc}") from exc
        assert reply is not None
        if "error" in reply:
            raise TmuxClaudeError(str(reply["error"]))
        return reply

    def ping(self) -> bool:
        try:
            return bool(self.request("Ping").get("pong"))
        except TmuxClaudeError:
            return False

    def status(self) -> dict[str, Any]:
        return dict(self.request("Status").get("status") or {})

    def get_state(self) -> dict[str, SessionRecord]:
        state = self.request("GetState").get("state") or {}
        records: dict[str, SessionRecord] = {}
        for item in state.get("sessions") or []:
            try:
                record = SessionRecord.from_dict(item)
            except ParseError:
                continue
            records[record.session_id] = record
        return records

    def approve(self, session_id: str) -> None:
        self.request({"ApprovePermission": {"session_id": session_id}})

    def shutdown(self) -> None:
        self.request("Shutdown")
