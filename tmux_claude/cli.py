#!/usr/bin/env python3
"""Command line entry point: dashboard, daemon control, hook forwarding and setup."""

from __future__ import annotations

import argparse
import json
import signal
import sys
import time

from tmux_claude import topology
from tmux_claude.config import DEFAULT_WATCH_INTERVAL, Paths, claude_projects_dir, default_paths, make_logger
from tmux_claude.dashboard import Dashboard, DashboardConfig, DaemonFeed, EmbeddedFeed, SocketFeed
from tmux_claude.errors import TmuxClaudeError
from tmux_claude.hook_client import DaemonClient, forward_hook
from tmux_claude.hook_daemon import DaemonAlreadyRunning, HookDaemon, socket_is_live
from tmux_claude.models import HookKind
from tmux_claude.parking import ParkingRegistry, SeshTemplates, load_restorable, save_restorable
from tmux_claude.preferences import PreferenceStore, TodoStore


HOOK_EVENTS = [kind.value for kind in HookKind]


def _open_feed(paths: Paths, use_daemon: bool, debug: bool) -> DaemonFeed:
    if not use_daemon:
        return DaemonFeed()
    if socket_is_live(paths.socket):
        return SocketFeed(DaemonClient(paths.socket), logger=make_logger(paths, "dashboard", debug))
    try:
        return EmbeddedFeed(HookDaemon(paths, logger=make_logger(paths, "daemon", debug)))
    except (DaemonAlreadyRunning, OSError):
        return DaemonFeed()


def run_tui(args: argparse.Namespace, paths: Paths) -> int:
    logger = make_logger(paths, "dashboard", args.debug)
    config = DashboardConfig(
        interval=max(0.5, float(args.watch)),
        filter=str(args.filter or ""),
        compact=bool(args.compact),
        ultracompact=bool(args.ultracompact),
        popup=bool(args.popup),
        projects_root=claude_projects_dir(),
        open_detail=bool(args.detail),
    )
    templates = SeshTemplates()
    registry = ParkingRegistry(paths.parked, templates=templates, logger=logger)
    feed = _open_feed(paths, not args.no_daemon, args.debug)
    dashboard = Dashboard(
        config,
        registry,
        feed=feed,
        logger=logger,
        preferences=PreferenceStore(paths.preferences, logger),
        todos=TodoStore(paths.todos, logger),
    )

    restorable = [name for name in load_restorable(paths.restorable) if not registry.is_parked(name)]
    if restorable:
        dashboard.set_message(f"{len(restorable)} session(s) can be restored: tmux-claude restore")

    try:
        return dashboard.run()
    finally:
        feed.close()
        live = set(dashboard.live_session_names())
        if live:
            try:
                save_restorable(paths.restorable, [name for name in templates.names() if name in live])
            except OSError as exc:
                logger.event("warn", "dashboard.restorable.save_failed", error=str(exc))


def run_daemon(args: argparse.Namespace, paths: Paths) -> int:
    client = DaemonClient(paths.socket)
    action = args.action
    if action in ("stop", "restart"):
        if client.ping():
            try:
                client.shutdown()
            except TmuxClaudeError as exc:
                print(f"daemon did not accept shutdown: {exc}", file=sys.stderr)
                return 1
            print("daemon stopping")
        elif action == "stop":
            print("daemon not running")
        if action == "stop":
            return 0
    if action == "status":
        if not client.ping():
            print("daemon not running")
            return 1
        print(json.dumps(client.status(), indent=2))
        return 0

    daemon = HookDaemon(paths, logger=make_logger(paths, "daemon", args.debug))
    for _ in range(20):
        try:
            daemon.start()
            break
        except DaemonAlreadyRunning:
            if action != "restart":
                print(f"daemon already running on {paths.socket}", file=sys.stderr)
                return 1
            time.sleep(0.1)
    else:
        print("previous daemon did not exit", file=sys.stderr)
        return 1

    def _on_signal(signum, frame) -> None:
        daemon.request_stop()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)
    print(f"daemon listening on {paths.socket}")
    daemon.wait()
    return 0


def run_hook(args: argparse.Namespace, paths: Paths) -> int:
    # The assistant must never be blocked or failed by its hooks.
    try:
        stdin_text = sys.stdin.read()
    except (OSError, ValueError):
        return 0
    forward_hook(args.event, stdin_text, paths.socket)
    return 0


def run_restore(args: argparse.Namespace, paths: Paths) -> int:
    try:
        live = {s.name for s in topology.scan_topology()}
    except TmuxClaudeError:
        live = set()
    templates = SeshTemplates()
    pending = [name for name in load_restorable(paths.restorable) if name not in live]
    if not pending:
        print("nothing to restore")
        return 0
    failed = 0
    for name in pending:
        if templates.connect(name):
            print(f"restored {name}")
        else:
            failed += 1
            print(f"could not restore {name}", file=sys.stderr)
    return 1 if failed else 0


def cycle_target(names: list[str], skipped: frozenset[str], current: str | None, forward: bool = True) -> str | None:
    """Next (or previous) session after ``current``, wrapping around and skipping ``skipped``.

    Outside any listed session the first candidate is chosen; a lone
    candidate that is already current yields None.
    """
    candidates = [name for name in names if name not in skipped]
    if not candidates:
        return None
    if current not in candidates:
        return candidates[0]
    if len(candidates) == 1:
        return None
    idx = candidates.index(current)
    return candidates[(idx + (1 if forward else -1)) % len(candidates)]


def run_cycle(args: argparse.Namespace, paths: Paths) -> int:
    try:
        names = topology.list_session_names()
    except TmuxClaudeError as exc:
        print(f"cannot list sessions: {exc}", file=sys.stderr)
        return 1
    skipped = PreferenceStore(paths.preferences).load().skipped
    target = cycle_target(names, skipped, topology.current_session(), forward=args.command == "cycle-next")
    if target is None:
        return 0
    if not topology.switch_client(target):
        print(f"could not switch to {target}", file=sys.stderr)
        return 1
    return 0


def hook_settings(command: str = "tmux-claude") -> dict:
    hooks: dict[str, list] = {}
    for kind in HOOK_EVENTS:
        entry: dict = {"hooks": [{"type": "command", "command": f"{command} hook {kind}"}]}
        if kind in ("PreToolUse", "PostToolUse", "PermissionRequest"):
            entry["matcher"] = "*"
        hooks[kind] = [entry]
    return {"hooks": hooks}


def run_setup(args: argparse.Namespace, paths: Paths) -> int:
    print("# Merge into ~/.claude/settings.json")
    print(json.dumps(hook_settings(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tmux-claude", description="tmux session dashboard with Claude Code status")
    parser.add_argument("-w", "--watch", type=float, default=DEFAULT_WATCH_INTERVAL, help="refresh interval in seconds")
    parser.add_argument("-f", "--filter", default="", help="case-insensitive session name filter")
    parser.add_argument("-c", "--compact", action="store_true", help="hide quiet processes in the detail view")
    parser.add_argument("-u", "--ultracompact", action="store_true", help="hide quiet sessions")
    parser.add_argument("-p", "--popup", action="store_true", help="exit after switching session; Esc quits")
    parser.add_argument("-D", "--detail", action="store_true", help="open the detail view of the current session")
    parser.add_argument("--no-daemon", action="store_true", help="derive status from activity logs only")
    parser.add_argument("--debug", action="store_true", help="debug-level JSONL logs")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("tui")

    daemon_parser = sub.add_parser("daemon")
    daemon_parser.add_argument("action", nargs="?", choices=["start", "stop", "status", "restart"], default="start")

    sub.add_parser("status")
    sub.add_parser("stop")

    hook_parser = sub.add_parser("hook")
    hook_parser.add_argument("event")

    sub.add_parser("restore")
    sub.add_parser("cycle-next", help="switch to the next session, skipping ones marked skip")
    sub.add_parser("cycle-prev", help="switch to the previous session, skipping ones marked skip")
    sub.add_parser("setup")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    paths = default_paths()
    command = args.command or "tui"
    if command == "tui":
        raise SystemExit(run_tui(args, paths))
    if command in ("daemon", "status", "stop"):
        if command != "daemon":
            args.action = command
        raise SystemExit(run_daemon(args, paths))
    if command == "hook":
        raise SystemExit(run_hook(args, paths))
    if command == "restore":
        raise SystemExit(run_restore(args, paths))
    if command == "setup":
        raise SystemExit(run_setup(args, paths))
    if command in ("cycle-next", "cycle-prev"):
        raise SystemExit(run_cycle(args, paths))
    raise RuntimeError(f"Unknown command: {command}")


if __name__ == "__main__":
    main()
