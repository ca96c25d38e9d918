#!/usr/bin/env python3
"""Join the tmux topology with a system process snapshot and roll up usage per pane."""

from __future__ import annotations

import re
import threading
from dataclasses import replace
from typing import Any, Callable, Iterable

import psutil

from tmux_claude.config import snapshot_timeout
from tmux_claude.errors import SnapshotError
from tmux_claude.models import Pane, ProcessNode, ProcessRecord, Session, sum_aggregates


MAX_DEPTH = 64
VERSION_NAME_RE = re.compile(r"^\d+(\.\d+)+")

_inflight: threading.Thread | None = None
_inflight_lock = threading.Lock()


def _enumerate_processes() -> list[ProcessRecord]:
    records: list[ProcessRecord] = []
    for proc in psutil.process_iter(["pid", "ppid", "name", "cmdline", "cpu_percent", "memory_info"]):
        try:
            info: dict[str, Any] = proc.info
            mem_info = info.get("memory_info")
            records.append(
                ProcessRecord(
                    pid=int(info["pid"]),
                    ppid=info.get("ppid"),
                    name=info.get("name") or "?",
                    cmdline=" ".join(info.get("cmdline") or []),
                    cpu_percent=float(info.get("cpu_percent") or 0.0),
                    memory_bytes=int(mem_info.rss) if mem_info else 0,
                )
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return records


def take_snapshot(
    timeout: float | None = None,
    enumerate_fn: Callable[[], list[ProcessRecord]] = _enumerate_processes,
) -> list[ProcessRecord]:
    """Enumerate every process once, giving up after ``timeout`` seconds.

    At most one enumeration runs at a time: while a worker abandoned by an
    earlier timeout is still alive, later calls fail fast instead of piling
    up more hung threads.
    """
    global _inflight
    limit = timeout if timeout is not None else snapshot_timeout()
    result: dict[str, Any] = {}

    def _worker() -> None:
        try:
            result["records"] = enumerate_fn()
        except Exception as exc:
            result["error"] = exc

    with _inflight_lock:
        if _inflight is not None and _inflight.is_alive():
            raise SnapshotError("previous process snapshot is still running")
        worker = threading.Thread(target=_worker, name="process-snapshot", daemon=True)
        _inflight = worker
        worker.start()
    worker.join(limit)
    if worker.is_alive():
        raise SnapshotError(f"process snapshot timed out after {limit}s")
    if "error" in result:
        raise SnapshotError(f"process snapshot failed: {result['error']}") from result["error"]
    return result["records"]


def build_children_index(records: Iterable[ProcessRecord]) -> tuple[dict[int, ProcessRecord], dict[int, list[int]]]:
    by_pid: dict[int, ProcessRecord] = {}
    children: dict[int, list[int]] = {}
    for rec in records:
        by_pid[rec.pid] = rec
    for rec in by_pid.values():
        if rec.ppid is None or rec.ppid == rec.pid:
            continue
        children.setdefault(rec.ppid, []).append(rec.pid)
    for kids in children.values():
        kids.sort()
    return by_pid, children


def build_tree(
    root_pid: int,
    by_pid: dict[int, ProcessRecord],
    children: dict[int, list[int]],
    max_depth: int = MAX_DEPTH,
) -> ProcessNode | None:
    """Build the subtree rooted at ``root_pid``.

    The walk is iterative with a visited set, so a corrupted parent chain
    truncates the affected branch instead of looping. Aggregates are filled
    in post-order: each node is constructed only after all of its children.
    """
    if root_pid not in by_pid:
        return None
    visited = {root_pid}
    preorder: list[int] = []
    accepted: dict[int, list[int]] = {}
    stack: list[tuple[int, int]] = [(root_pid, 0)]
    while stack:
        pid, depth = stack.pop()
        preorder.append(pid)
        kids: list[int] = []
        if depth < max_depth:
            for child in children.get(pid, ()):
                if child in visited or child not in by_pid:
                    continue
                visited.add(child)
                kids.append(child)
        accepted[pid] = kids
        for child in reversed(kids):
            stack.append((child, depth + 1))

    built: dict[int, ProcessNode] = {}
    for pid in reversed(preorder):
        nodes = tuple(built.pop(child) for child in accepted[pid])
        record = by_pid[pid]
        built[pid] = ProcessNode(
            record=record,
            children=nodes,
            aggregate=record.own + sum_aggregates(n.aggregate for n in nodes),
        )
    return built[root_pid]


def is_claude_process(record: ProcessRecord) -> bool:
    name = record.name.lower()
    cmd = record.cmdline.lower()
    if "tmux-claude" in cmd or "tmux-claude" in name:
        return False
    if "claude" in cmd or "claude" in name:
        return True
    # Claude Code renames its process to its version string, e.g. "2.1.20".
    return bool(VERSION_NAME_RE.match(record.name))


def find_claude_node(tree: ProcessNode | None) -> ProcessNode | None:
    if tree is None:
        return None
    for _, node in tree.walk():
        if is_claude_process(node.record):
            return node
    return None


def find_claude_pane(session: Session) -> Pane | None:
    for pane in session.panes:
        if find_claude_node(pane.tree) is not None:
            return pane
    return None


def aggregate_topology(sessions: list[Session], records: list[ProcessRecord]) -> list[Session]:
    """Attach a process tree to every pane and mark each session's assistant pane."""
    by_pid, children = build_children_index(records)
    result: list[Session] = []
    for session in sessions:
        windows = tuple(
            replace(
                window,
                panes=tuple(replace(pane, tree=build_tree(pane.pid, by_pid, children)) for pane in window.panes),
            )
            for window in session.windows
        )
        enriched = replace(session, windows=windows)
        claude_pane = find_claude_pane(enriched)
        if claude_pane is not None:
            enriched = replace(enriched, claude_pane=claude_pane.pane_id)
        result.append(enriched)
    return result
