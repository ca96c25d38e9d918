#!/usr/bin/env python3
"""Derive a session's assistant status from its JSONL activity log."""

from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any

from tmux_claude.config import claude_projects_dir
from tmux_claude.errors import ParseError
from tmux_claude.models import IDLE, ClaudeStatus, StatusKind


TAIL_ENTRIES = 10
BLOCK_SIZE = 8192
COMMAND_PREVIEW = 60

AUTO_APPROVED_TOOLS = {"Read", "Grep", "Glob", "LS"}
COMMAND_TOOLS = {"Bash", "Task"}
EDIT_TOOLS = {"Write", "Edit"}


def truncate_command(cmd: str, max_len: int = COMMAND_PREVIEW) -> str:
    if len(cmd) <= max_len:
        return cmd
    return cmd[: max_len - 3] + "..."


def extract_filename(path: str) -> str:
    return path.rsplit("/", 1)[-1] or path


def parse_timestamp(raw: Any) -> float | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def projects_dir_for(cwd: str, projects_root: Path | None = None) -> Path:
    root = projects_root if projects_root is not None else claude_projects_dir()
    return root / cwd.replace("/", "-")


def find_latest_log(directory: Path) -> Path | None:
    try:
        candidates = [p for p in directory.iterdir() if p.suffix == ".jsonl" and p.is_file()]
    except OSError:
        return None
    latest: Path | None = None
    latest_mtime = 0.0
    for candidate in candidates:
        try:
            mtime = candidate.stat().st_mtime
        except OSError:
            # Rotated or deleted between listing and stat.
            continue
        if latest is None or mtime > latest_mtime:
            latest, latest_mtime = candidate, mtime
    return latest


def parse_log_line(line: str) -> dict[str, Any]:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ParseError(f"malformed activity-log line: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseError("activity-log line is not a JSON object")
    return data


def read_tail_entries(path: Path, count: int = TAIL_ENTRIES, block_size: int = BLOCK_SIZE) -> list[dict[str, Any]]:
    """Return the last ``count`` well-formed records of ``path``, oldest first.

    The file is read backwards in blocks so large logs cost O(tail). Lines
    that fail to parse, including a half-written final line, are skipped and
    do not count towards ``count``.
    """
    entries: list[dict[str, Any]] = []

    def _collect(raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            entries.append(parse_log_line(text))
        except ParseError:
            pass

    with path.open("rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        remainder = b""
        while pos > 0 and len(entries) < count:
            step = min(block_size, pos)
            pos -= step
            f.seek(pos)
            lines = (f.read(step) + remainder).split(b"\n")
            remainder = lines.pop(0)
            for raw in reversed(lines):
                _collect(raw)
                if len(entries) >= count:
                    break
        if pos == 0 and remainder and len(entries) < count:
            _collect(remainder)

    entries.reverse()
    return entries[-count:]


def _find_tool_input(entries: list[dict[str, Any]], tool_name: str) -> dict[str, Any] | None:
    for entry in reversed(entries):
        if entry.get("type") != "assistant":
            continue
        message = entry.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            continue
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "tool_use" and item.get("name") == tool_name:
                tool_input = item.get("input")
                return tool_input if isinstance(tool_input, dict) else {}
    return None


def status_for_tool(tool_name: str, tool_input: dict[str, Any] | None, timestamp: float) -> ClaudeStatus:
    """Map a tool that is about to run to the dialog the assistant is showing."""
    if tool_name in COMMAND_TOOLS:
        if tool_input is None:
            return ClaudeStatus(StatusKind.NEEDS_PERMISSION, timestamp, prompt=f"{tool_name}: ...")
        command = str(tool_input.get("command") or tool_input.get("prompt") or "unknown command")
        return ClaudeStatus(
            StatusKind.NEEDS_PERMISSION,
            timestamp,
            prompt=f"{tool_name}: {truncate_command(command)}",
            description=str(tool_input.get("description") or ""),
        )
    if tool_name in EDIT_TOOLS:
        path = str((tool_input or {}).get("file_path") or "")
        return ClaudeStatus(StatusKind.EDIT_APPROVAL, timestamp, prompt=extract_filename(path) if path else "file")
    if tool_name == "ExitPlanMode":
        return ClaudeStatus(StatusKind.PLAN_REVIEW, timestamp)
    if tool_name == "AskUserQuestion":
        return ClaudeStatus(StatusKind.QUESTION_ASKED, timestamp)
    if tool_name in AUTO_APPROVED_TOOLS or not tool_name:
        return ClaudeStatus(StatusKind.RUNNING, timestamp)
    return ClaudeStatus(StatusKind.NEEDS_PERMISSION, timestamp, prompt=f"{tool_name}: ...")


def status_from_entries(entries: list[dict[str, Any]], fallback_ts: float = 0.0) -> ClaudeStatus:
    """Classify chronologically ordered log records. The last ``progress`` record decides."""
    timestamp = fallback_ts
    for entry in reversed(entries):
        parsed = parse_timestamp(entry.get("timestamp"))
        if parsed is not None:
            timestamp = parsed
            break

    progress: dict[str, Any] = {}
    for entry in reversed(entries):
        if entry.get("type") == "progress":
            data = entry.get("data")
            progress = data if isinstance(data, dict) else {}
            break

    hook_event = progress.get("hookEvent")
    hook_name = str(progress.get("hookName") or "")
    tool_name = hook_name.split(":", 1)[1] if ":" in hook_name else ""

    if hook_event == "PreToolUse" and tool_name:
        return status_for_tool(tool_name, _find_tool_input(entries, tool_name), timestamp)
    if hook_event == "Stop":
        return ClaudeStatus(StatusKind.WAITING, timestamp)
    return ClaudeStatus(StatusKind.RUNNING, timestamp)


def detect_status(cwd: str, projects_root: Path | None = None, count: int = TAIL_ENTRIES) -> ClaudeStatus:
    """Status of the assistant working in ``cwd``; IDLE when it has no activity log."""
    log_path = find_latest_log(projects_dir_for(cwd, projects_root))
    if log_path is None:
        return IDLE
    try:
        entries = read_tail_entries(log_path, count)
        mtime = log_path.stat().st_mtime
    except OSError:
        return IDLE
    if not entries:
        return IDLE
    return status_from_entries(entries, fallback_ts=mtime)
