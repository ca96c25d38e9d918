#!/usr/bin/env python3
"""Tests for process snapshot handling and per-pane rollups."""

from __future__ import annotations

import threading
import time
import unittest

from tests.fakes import MB, sample_records, sample_sessions
from tmux_claude.errors import SnapshotError
from tmux_claude.models import ZERO, ProcessRecord
from tmux_claude.process_tree import (
    aggregate_topology,
    build_children_index,
    build_tree,
    is_claude_process,
    take_snapshot,
)
from tmux_claude.topology import parse_pane_listing


class BuildTreeTests(unittest.TestCase):
    def test_children_usage_rolls_up_into_session(self) -> None:
        records = [
            ProcessRecord(10, 1, "zsh", cpu_percent=2.0, memory_bytes=1 * MB),
            ProcessRecord(11, 10, "make", cpu_percent=5.0, memory_bytes=2 * MB),
            ProcessRecord(12, 10, "cc", cpu_percent=3.0, memory_bytes=3 * MB),
            ProcessRecord(20, 1, "bash", cpu_percent=1.0, memory_bytes=1 * MB),
        ]
        listing = "a\t0\tw\t0\t%1\t10\t/a\nb\t0\tw\t0\t%2\t20\t/b"
        sessions = aggregate_topology(parse_pane_listing(listing), records)
        a, b = sessions
        self.assertAlmostEqual(a.aggregate.cpu_percent, 2.0 + 8.0)
        self.assertEqual(a.aggregate.memory_bytes, 6 * MB)
        self.assertAlmostEqual(b.aggregate.cpu_percent, 1.0)

    def test_rollup_is_monotonic(self) -> None:
        by_pid, children = build_children_index(sample_records())
        tree = build_tree(100, by_pid, children)
        assert tree is not None
        for _, node in tree.walk():
            for _, descendant in node.walk():
                self.assertGreaterEqual(node.aggregate.cpu_percent, descendant.aggregate.cpu_percent)
                self.assertGreaterEqual(node.aggregate.memory_bytes, descendant.aggregate.memory_bytes)

    def test_missing_leader_gives_empty_tree(self) -> None:
        listing = "ghost\t0\tw\t0\t%9\t999\t/tmp"
        (session,) = aggregate_topology(parse_pane_listing(listing), sample_records())
        pane = session.panes[0]
        self.assertIsNone(pane.tree)
        self.assertEqual(pane.aggregate, ZERO)
        self.assertEqual(session.aggregate, ZERO)

    def test_parent_cycle_is_truncated(self) -> None:
        records = [
            ProcessRecord(200, 201, "a", cpu_percent=1.0),
            ProcessRecord(201, 200, "b", cpu_percent=2.0),
        ]
        by_pid, children = build_children_index(records)
        tree = build_tree(200, by_pid, children)
        assert tree is not None
        pids = [node.pid for _, node in tree.walk()]
        self.assertEqual(pids, [200, 201])
        self.assertAlmostEqual(tree.aggregate.cpu_percent, 3.0)

    def test_depth_limit_truncates_long_chains(self) -> None:
        records = [ProcessRecord(i, i - 1 if i > 1 else None, f"p{i}") for i in range(1, 50)]
        by_pid, children = build_children_index(records)
        tree = build_tree(1, by_pid, children, max_depth=5)
        assert tree is not None
        self.assertEqual(max(depth for depth, _ in tree.walk()), 5)

    def test_self_parented_record_is_not_its_own_child(self) -> None:
        by_pid, children = build_children_index([ProcessRecord(0, 0, "sched")])
        self.assertEqual(children, {})
        tree = build_tree(0, by_pid, children)
        assert tree is not None
        self.assertEqual(tree.children, ())


class ClaudeDetectionTests(unittest.TestCase):
    def test_detection_rules(self) -> None:
        self.assertTrue(is_claude_process(ProcessRecord(1, None, "node", "node /usr/local/bin/claude")))
        self.assertTrue(is_claude_process(ProcessRecord(1, None, "2.1.20", "")))
        self.assertFalse(is_claude_process(ProcessRecord(1, None, "tmux-claude", "tmux-claude tui")))
        self.assertFalse(is_claude_process(ProcessRecord(1, None, "bash", "bash")))

    def test_aggregate_topology_marks_assistant_pane(self) -> None:
        sessions = {s.name: s for s in aggregate_topology(sample_sessions(), sample_records())}
        self.assertEqual(sessions["alpha"].claude_pane, "%1")
        self.assertEqual(sessions["gamma"].claude_pane, "%3")
        self.assertIsNone(sessions["beta"].claude_pane)


class TakeSnapshotTests(unittest.TestCase):
    def test_returns_enumerated_records(self) -> None:
        records = take_snapshot(timeout=1.0, enumerate_fn=sample_records)
        self.assertEqual(len(records), len(sample_records()))

    def _hung_snapshot(self) -> threading.Event:
        release = threading.Event()
        self.addCleanup(self._drain_hung_worker, release)

        def _slow() -> list[ProcessRecord]:
            release.wait(5.0)
            return []

        started = time.monotonic()
        with self.assertRaises(SnapshotError):
            take_snapshot(timeout=0.05, enumerate_fn=_slow)
        self.assertLess(time.monotonic() - started, 0.9)
        return release

    def _drain_hung_worker(self, release: threading.Event) -> None:
        release.set()
        deadline = time.monotonic() + 3.0
        while time.monotonic() < deadline:
            try:
                take_snapshot(timeout=1.0, enumerate_fn=list)
                return
            except SnapshotError:
                time.sleep(0.02)

    def test_timeout_raises_snapshot_error(self) -> None:
        self._hung_snapshot()

    def test_no_second_worker_while_one_is_hung(self) -> None:
        self._hung_snapshot()
        before = threading.active_count()
        calls: list[int] = []
        with self.assertRaises(SnapshotError) as ctx:
            take_snapshot(timeout=1.0, enumerate_fn=lambda: calls.append(1) or [])
        self.assertIn("still running", str(ctx.exception))
        self.assertEqual(calls, [])
        self.assertEqual(threading.active_count(), before)

    def test_enumeration_failure_raises_snapshot_error(self) -> None:
        def _boom() -> list[ProcessRecord]:
            raise RuntimeError("proc unavailable")

        with self.assertRaises(SnapshotError):
            take_snapshot(timeout=1.0, enumerate_fn=_boom)


if __name__ == "__main__":
    unittest.main(verbosity=2)
