#!/usr/bin/env python3
"""Tests for tmux listing parsing and scanner failure handling."""

from __future__ import annotations

import subprocess
import unittest
from unittest import mock

from tests.fakes import PANE_LISTING
from tmux_claude.errors import DiscoveryError
from tmux_claude.topology import PANE_FORMAT, list_session_names, parse_pane_listing, scan_topology


def _completed(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=["tmux"], returncode=returncode, stdout=stdout, stderr=stderr)


class ParsePaneListingTests(unittest.TestCase):
    def test_groups_rows_in_reported_order(self) -> None:
        sessions = parse_pane_listing(PANE_LISTING)
        self.assertEqual([s.name for s in sessions], ["alpha", "beta", "gamma"])

        alpha = sessions[0]
        self.assertEqual(len(alpha.windows), 1)
        self.assertEqual(alpha.windows[0].name, "editor")
        self.assertEqual([p.index for p in alpha.windows[0].panes], [0, 1])
        self.assertEqual(alpha.windows[0].panes[0].pid, 100)
        self.assertEqual(alpha.windows[0].panes[0].pane_id, "%1")
        self.assertEqual(alpha.windows[0].panes[0].cwd, "/work/a")
        self.assertEqual(sessions[2].windows[0].index, 1)

    def test_blank_lines_are_ignored(self) -> None:
        self.assertEqual(parse_pane_listing("\n\n"), [])

    def test_rejects_row_with_missing_field(self) -> None:
        with self.assertRaises(DiscoveryError):
            parse_pane_listing("alpha\t0\teditor\t0\t%1\t100")

    def test_rejects_non_numeric_pid(self) -> None:
        with self.assertRaises(DiscoveryError):
            parse_pane_listing("alpha\t0\teditor\t0\t%1\tnope\t/work/a")

    def test_rejects_whole_listing_on_one_bad_row(self) -> None:
        text = PANE_LISTING + "\nbroken row"
        with self.assertRaises(DiscoveryError):
            parse_pane_listing(text)


class ScanTopologyTests(unittest.TestCase):
    def test_uses_single_list_panes_query(self) -> None:
        with mock.patch("tmux_claude.topology.subprocess.run", return_value=_completed(PANE_LISTING)) as run:
            sessions = scan_topology(timeout=1.0)
        self.assertEqual(len(sessions), 3)
        run.assert_called_once()
        args = run.call_args.args[0]
        self.assertEqual(args, ["tmux", "list-panes", "-a", "-F", PANE_FORMAT])
        self.assertEqual(run.call_args.kwargs["timeout"], 1.0)

    def test_no_server_is_empty_topology(self) -> None:
        result = _completed(stderr="no server running on /tmp/tmux-1000/default", returncode=1)
        with mock.patch("tmux_claude.topology.subprocess.run", return_value=result):
            self.assertEqual(scan_topology(), [])

    def test_other_failures_raise_discovery_error(self) -> None:
        result = _completed(stderr="protocol version mismatch", returncode=1)
        with mock.patch("tmux_claude.topology.subprocess.run", return_value=result):
            with self.assertRaises(DiscoveryError):
                scan_topology()

    def test_missing_tmux_raises_discovery_error(self) -> None:
        with mock.patch("tmux_claude.topology.subprocess.run", side_effect=FileNotFoundError("tmux")):
            with self.assertRaises(DiscoveryError):
                scan_topology()

    def test_timeout_raises_discovery_error(self) -> None:
        with mock.patch(
            "tmux_claude.topology.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="tmux", timeout=2.0),
        ):
            with self.assertRaises(DiscoveryError):
                scan_topology()


class ListSessionNamesTests(unittest.TestCase):
    def test_names_in_tmux_order(self) -> None:
        with mock.patch("tmux_claude.topology.subprocess.run", return_value=_completed("beta\nalpha\n\n")) as run:
            self.assertEqual(list_session_names(), ["beta", "alpha"])
        self.assertEqual(run.call_args.args[0], ["tmux", "list-sessions", "-F", "#{session_name}"])

    def test_no_server_means_no_sessions(self) -> None:
        result = _completed(stderr="error connecting to /tmp/tmux-1000/default", returncode=1)
        with mock.patch("tmux_claude.topology.subprocess.run", return_value=result):
            self.assertEqual(list_session_names(), [])

    def test_other_failures_raise_discovery_error(self) -> None:
        result = _completed(stderr="protocol version mismatch", returncode=1)
        with mock.patch("tmux_claude.topology.subprocess.run", return_value=result):
            with self.assertRaises(DiscoveryError):
                list_session_names()


if __name__ == "__main__":
    unittest.main(verbosity=2)
