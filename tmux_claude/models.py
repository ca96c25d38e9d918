#!/usr/bin/env python3
"""Value types shared by the scanner, aggregator, detector, daemon and dashboard."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tmux_claude.errors import ParseError


@dataclass(frozen=True)
class Aggregate:
    cpu_percent: float = 0.0
    memory_bytes: int = 0

    def __add__(self, other: Aggregate) -> Aggregate:
        return Aggregate(self.cpu_percent + other.cpu_percent, self.memory_bytes + other.memory_bytes)


ZERO = Aggregate()


def sum_aggregates(items) -> Aggregate:
    total = ZERO
    for item in items:
        total = total + item
    return total


@dataclass(frozen=True)
class ProcessRecord:
    pid: int
    ppid: int | None
    name: str
    cmdline: str = ""
    cpu_percent: float = 0.0
    memory_bytes: int = 0

    @property
    def own(self) -> Aggregate:
        return Aggregate(self.cpu_percent, self.memory_bytes)


@dataclass(frozen=True)
class ProcessNode:
    record: ProcessRecord
    children: tuple[ProcessNode, ...] = ()
    aggregate: Aggregate = ZERO

    @property
    def pid(self) -> int:
        return self.record.pid

    def walk(self):
        """Yield ``(depth, node)`` in display order, without recursion."""
        stack: list[tuple[int, ProcessNode]] = [(0, self)]
        while stack:
            depth, node = stack.pop()
            yield depth, node
            for child in reversed(node.children):
                stack.append((depth + 1, child))


@dataclass(frozen=True)
class Pane:
    index: int
    pane_id: str
    pid: int
    cwd: str
    tree: ProcessNode | None = None

    @property
    def aggregate(self) -> Aggregate:
        return self.tree.aggregate if self.tree is not None else ZERO


@dataclass(frozen=True)
class Window:
    index: int
    name: str
    panes: tuple[Pane, ...] = ()

    @property
    def aggregate(self) -> Aggregate:
        return sum_aggregates(p.aggregate for p in self.panes)


class StatusKind(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING = "waiting"
    NEEDS_PERMISSION = "needs_permission"
    EDIT_APPROVAL = "edit_approval"
    PLAN_REVIEW = "plan_review"
    QUESTION_ASKED = "question_asked"


ATTENTION_KINDS = frozenset(
    {StatusKind.NEEDS_PERMISSION, StatusKind.EDIT_APPROVAL, StatusKind.PLAN_REVIEW, StatusKind.QUESTION_ASKED}
)
APPROVABLE_KINDS = frozenset({StatusKind.NEEDS_PERMISSION, StatusKind.EDIT_APPROVAL})

STATUS_LABELS = {
    StatusKind.IDLE: "idle",
    StatusKind.RUNNING: "working",
    StatusKind.WAITING: "waiting for input",
    StatusKind.NEEDS_PERMISSION: "needs permission",
    StatusKind.EDIT_APPROVAL: "edit approval",
    StatusKind.PLAN_REVIEW: "plan review",
    StatusKind.QUESTION_ASKED: "question asked",
}


@dataclass(frozen=True)
class ClaudeStatus:
    kind: StatusKind
    timestamp: float = 0.0
    prompt: str = ""
    description: str = ""

    @property
    def needs_attention(self) -> bool:
        return self.kind in ATTENTION_KINDS

    @property
    def accepts_approval(self) -> bool:
        return self.kind in APPROVABLE_KINDS

    @property
    def has_approve_always(self) -> bool:
        return self.kind is StatusKind.NEEDS_PERMISSION

    @property
    def label(self) -> str:
        return STATUS_LABELS[self.kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "prompt": self.prompt,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaudeStatus:
        try:
            kind = StatusKind(str(data.get("kind") or ""))
        except ValueError as exc:
            raise ParseError(f"unknown status kind: {data.get('kind')!r}") from exc
        return cls(
            kind=kind,
            timestamp=float(data.get("timestamp") or 0.0),
            prompt=str(data.get("prompt") or ""),
            description=str(data.get("description") or ""),
        )


IDLE = ClaudeStatus(StatusKind.IDLE)


@dataclass(frozen=True)
class Session:
    name: str
    windows: tuple[Window, ...] = ()
    claude_status: ClaudeStatus | None = None
    claude_pane: str | None = None

    @property
    def aggregate(self) -> Aggregate:
        return sum_aggregates(w.aggregate for w in self.windows)

    @property
    def panes(self) -> list[Pane]:
        return [p for w in self.windows for p in w.panes]

    @property
    def has_claude(self) -> bool:
        return self.claude_pane is not None


class HookKind(str, Enum):
    STOP = "Stop"
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"
    USER_PROMPT_SUBMIT = "UserPromptSubmit"
    NOTIFICATION = "Notification"
    PERMISSION_REQUEST = "PermissionRequest"


@dataclass(frozen=True)
class HookEvent:
    kind: HookKind
    session_id: str
    cwd: str
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    message: str = ""

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {"session_id": self.session_id, "cwd": self.cwd}
        if self.kind in (HookKind.PRE_TOOL_USE, HookKind.POST_TOOL_USE, HookKind.PERMISSION_REQUEST):
            body["tool_name"] = self.tool_name
            body["tool_input"] = self.tool_input
        if self.kind is HookKind.NOTIFICATION:
            body["message"] = self.message
        return {"HookEvent": {self.kind.value: body}}

    @classmethod
    def from_wire(cls, data: Any) -> HookEvent:
        """Decode ``{"HookEvent": {"<Kind>": {...}}}`` or the bare ``{"<Kind>": {...}}`` form."""
        if isinstance(data, dict) and "HookEvent" in data:
            data = data["HookEvent"]
        if not isinstance(data, dict) or len(data) != 1:
            raise ParseError("hook event must be an object with exactly one variant")
        (raw_kind, body), = data.items()
        try:
            kind = HookKind(raw_kind)
        except ValueError as exc:
            raise ParseError(f"unknown hook event kind: {raw_kind!r}") from exc
        if not isinstance(body, dict):
            raise ParseError(f"{raw_kind} payload must be an object")
        session_id = body.get("session_id")
        cwd = body.get("cwd")
        if not isinstance(session_id, str) or not isinstance(cwd, str):
            raise ParseError(f"{raw_kind} payload requires string session_id and cwd")
        tool_input = body.get("tool_input")
        return cls(
            kind=kind,
            session_id=session_id,
            cwd=cwd,
            tool_name=str(body.get("tool_name") or ""),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            message=str(body.get("message") or ""),
        )


@dataclass(frozen=True)
class ParkedSession:
    name: str
    template: str
    parked_at: float
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "template": self.template, "parked_at": self.parked_at, "note": self.note}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParkedSession:
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise ParseError("parked entry requires a name")
        return cls(
            name=name,
            template=str(data.get("template") or name),
            parked_at=float(data.get("parked_at") or 0.0),
            note=str(data.get("note") or ""),
        )


def format_memory(num_bytes: int) -> str:
    kb = max(0, int(num_bytes)) // 1024
    if kb < 1024:
        return f"{kb}K"
    if kb < 1024 * 1024:
        return f"{kb // 1024}M"
    return f"{kb / (1024.0 * 1024.0):.1f}G"


def format_age(timestamp: float, now: float) -> str:
    seconds = int(now - timestamp)
    if seconds < 0:
        return "now"
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"
