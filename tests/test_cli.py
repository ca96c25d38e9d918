#!/usr/bin/env python3
"""Tests for the command line surface, configuration and JSONL logging."""

from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from tmux_claude.cli import build_parser, cycle_target, hook_settings, main
from tmux_claude.config import Paths, cache_dir, make_logger, snapshot_timeout
from tmux_claude.logging_utils import JsonlLogger, LoggerConfig, read_logging_config


class CliTests(unittest.TestCase):
    def test_parser_defaults_to_dashboard_flags(self) -> None:
        args = build_parser().parse_args(["-w", "5", "-f", "api", "-u", "-p"])
        self.assertIsNone(args.command)
        self.assertEqual((args.watch, args.filter, args.ultracompact, args.popup), (5.0, "api", True, True))

        args = build_parser().parse_args(["daemon", "restart"])
        self.assertEqual((args.command, args.action), ("daemon", "restart"))

        self.assertTrue(build_parser().parse_args(["-D"]).detail)
        self.assertFalse(build_parser().parse_args([]).detail)
        self.assertEqual(build_parser().parse_args(["cycle-prev"]).command, "cycle-prev")

    def test_hook_settings_cover_every_event(self) -> None:
        hooks = hook_settings()["hooks"]
        self.assertEqual(
            set(hooks), {"Stop", "PreToolUse", "PostToolUse", "UserPromptSubmit", "Notification", "PermissionRequest"}
        )
        self.assertEqual(hooks["Stop"][0]["hooks"][0]["command"], "tmux-claude hook Stop")
        self.assertEqual(hooks["PreToolUse"][0]["matcher"], "*")

    def test_setup_prints_mergeable_json(self) -> None:
        out = io.StringIO()
        with mock.patch("sys.stdout", out), self.assertRaises(SystemExit) as ctx:
            main(["setup"])
        self.assertEqual(ctx.exception.code, 0)
        body = out.getvalue().split("\n", 1)[1]
        self.assertIn("hooks", json.loads(body))

    def test_hook_without_daemon_exits_cleanly(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env = {"TMUX_CLAUDE_CACHE_DIR": tmp, "TMUX_CLAUDE_SOCKET": str(Path(tmp) / "absent.sock")}
            with mock.patch.dict(os.environ, env), mock.patch("sys.stdin", io.StringIO('{"session_id": "s"}')):
                with self.assertRaises(SystemExit) as ctx:
                    main(["hook", "Stop"])
        self.assertEqual(ctx.exception.code, 0)


class CycleTests(unittest.TestCase):
    names = ["alpha", "beta", "gamma"]

    def test_wraps_in_both_directions(self) -> None:
        self.assertEqual(cycle_target(self.names, frozenset(), "gamma"), "alpha")
        self.assertEqual(cycle_target(self.names, frozenset(), "alpha", forward=False), "gamma")
        self.assertEqual(cycle_target(self.names, frozenset(), "alpha"), "beta")

    def test_skipped_sessions_are_passed_over(self) -> None:
        self.assertEqual(cycle_target(self.names, frozenset({"beta"}), "alpha"), "gamma")

    def test_outside_the_list_goes_to_first_candidate(self) -> None:
        self.assertEqual(cycle_target(self.names, frozenset({"alpha"}), "alpha"), "beta")
        self.assertEqual(cycle_target(self.names, frozenset(), None), "alpha")

    def test_nothing_to_cycle_to(self) -> None:
        self.assertIsNone(cycle_target(["alpha"], frozenset(), "alpha"))
        self.assertIsNone(cycle_target(self.names, frozenset(self.names), "alpha"))

    def test_command_switches_to_next_unskipped_session(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "preferences.json").write_text(json.dumps({"version": 1, "skipped": ["beta"]}))
            env = {"TMUX_CLAUDE_CACHE_DIR": tmp}
            with mock.patch.dict(os.environ, env), mock.patch(
                "tmux_claude.topology.list_session_names", return_value=self.names
            ), mock.patch("tmux_claude.topology.current_session", return_value="alpha"), mock.patch(
                "tmux_claude.topology.switch_client", return_value=True
            ) as switch:
                with self.assertRaises(SystemExit) as ctx:
                    main(["cycle-next"])
        self.assertEqual(ctx.exception.code, 0)
        switch.assert_called_once_with("gamma")


class ConfigTests(unittest.TestCase):
    def test_cache_dir_precedence(self) -> None:
        with mock.patch.dict(os.environ, {"TMUX_CLAUDE_CACHE_DIR": "/x/cache", "XDG_CACHE_HOME": "/xdg"}):
            self.assertEqual(cache_dir(), Path("/x/cache"))
        with mock.patch.dict(os.environ, {"TMUX_CLAUDE_CACHE_DIR": "", "XDG_CACHE_HOME": "/xdg"}):
            self.assertEqual(cache_dir(), Path("/xdg/tmux-claude"))

    def test_socket_override_and_defaults(self) -> None:
        paths = Paths(root=Path("/c"))
        with mock.patch.dict(os.environ, {"TMUX_CLAUDE_SOCKET": ""}):
            self.assertEqual(paths.socket, Path("/c/daemon.sock"))
        with mock.patch.dict(os.environ, {"TMUX_CLAUDE_SOCKET": "/run/tc.sock"}):
            self.assertEqual(paths.socket, Path("/run/tc.sock"))
        self.assertEqual(paths.parked, Path("/c/parked.json"))
        self.assertEqual(paths.preferences, Path("/c/preferences.json"))
        self.assertEqual(paths.todos, Path("/c/todos.json"))

    def test_invalid_timeouts_fall_back(self) -> None:
        with mock.patch.dict(os.environ, {"TMUX_CLAUDE_SNAPSHOT_TIMEOUT": "soon"}):
            self.assertEqual(snapshot_timeout(), 3.0)
        with mock.patch.dict(os.environ, {"TMUX_CLAUDE_SNAPSHOT_TIMEOUT": "0.5"}):
            self.assertEqual(snapshot_timeout(), 0.5)


class LoggingTests(unittest.TestCase):
    def test_records_are_jsonl_and_filtered_by_level(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "logs" / "daemon.jsonl"
            logger = JsonlLogger(path, component="daemon", config=LoggerConfig(level="info"))
            logger.event("debug", "noise")
            logger.event("info", "daemon.started", socket="/tmp/x.sock")
            lines = path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 1)
            record = json.loads(lines[0])
            self.assertEqual((record["component"], record["event"], record["socket"]), ("daemon", "daemon.started", "/tmp/x.sock"))
            self.assertEqual(record["pid"], os.getpid())

    def test_debug_flag_lowers_level(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            logger = make_logger(Paths(root=Path(tmp)), "dashboard", debug=True)
            logger.event("debug", "dashboard.refresh")
            self.assertTrue((Path(tmp) / "logs" / "dashboard.jsonl").exists())

    def test_env_config_parsing(self) -> None:
        env = {"TMUX_CLAUDE_LOG_LEVEL": "warn", "TMUX_CLAUDE_LOG_ROTATION_MB": "-1", "TMUX_CLAUDE_LOG_RETENTION_FILES": "7"}
        with mock.patch.dict(os.environ, env):
            config = read_logging_config()
        self.assertEqual((config.level, config.rotate_mb, config.retention_files), ("warn", 5, 7))
        with mock.patch.dict(os.environ, {"TMUX_CLAUDE_LOG_LEVEL": "LOUD"}):
            self.assertEqual(read_logging_config().level, "info")

    def test_rotation_keeps_numbered_backups(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "daemon.jsonl"
            logger = JsonlLogger(path, component="daemon", config=LoggerConfig(retention_files=2))
            with mock.patch.object(LoggerConfig, "rotate_bytes", new_callable=mock.PropertyMock, return_value=10):
                for n in range(4):
                    logger.event("info", "tick", n=n)
            self.assertEqual(sorted(p.name for p in Path(tmp).iterdir()), ["daemon.jsonl", "daemon.jsonl.1", "daemon.jsonl.2"])
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))["n"], 3)
            self.assertEqual(json.loads((Path(tmp) / "daemon.jsonl.1").read_text(encoding="utf-8"))["n"], 2)
            self.assertEqual(json.loads((Path(tmp) / "daemon.jsonl.2").read_text(encoding="utf-8"))["n"], 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
