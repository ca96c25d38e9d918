#!/usr/bin/env python3
"""Tests for per-session toggles, global mute and todo persistence."""

from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from tmux_claude.errors import ParseError, PreferencesError
from tmux_claude.preferences import AUTO_APPROVE, MUTED, SKIPPED, Preferences, PreferenceStore, TodoStore


class PreferenceStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "preferences.json"
        self.store = PreferenceStore(self.path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_defaults_without_file(self) -> None:
        prefs = self.store.load()
        self.assertEqual(prefs, Preferences())
        self.assertEqual(prefs.flags_for("alpha"), ())

    def test_toggle_persists_and_flips_back(self) -> None:
        self.assertTrue(self.store.toggle(AUTO_APPROVE, "alpha"))
        self.assertTrue(self.store.toggle(SKIPPED, "beta"))
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(data["auto_approve"], ["alpha"])
        self.assertEqual(data["skipped"], ["beta"])

        reloaded = PreferenceStore(self.path).load()
        self.assertEqual(reloaded.flags_for("alpha"), (AUTO_APPROVE,))
        self.assertTrue(reloaded.has(SKIPPED, "beta"))

        self.assertFalse(self.store.toggle(AUTO_APPROVE, "alpha"))
        self.assertFalse(self.store.load().has(AUTO_APPROVE, "alpha"))

    def test_global_mute_is_independent_of_session_mute(self) -> None:
        self.store.toggle(MUTED, "alpha")
        self.assertTrue(self.store.toggle_global_mute())
        prefs = self.store.load()
        self.assertTrue(prefs.global_mute)
        self.assertEqual(prefs.muted, frozenset({"alpha"}))
        self.assertFalse(self.store.toggle_global_mute())

    def test_unknown_flag_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.toggle("pinned", "alpha")
        self.assertFalse(self.path.exists())

    def test_corrupt_file_falls_back_to_defaults(self) -> None:
        self.path.write_text("{not json", encoding="utf-8")
        self.assertEqual(self.store.load(), Preferences())
        self.assertTrue(self.store.toggle(MUTED, "alpha"))
        self.assertEqual(self.store.load().muted, frozenset({"alpha"}))

    def test_wrong_shape_is_a_parse_error(self) -> None:
        with self.assertRaises(ParseError):
            Preferences.from_dict({"muted": "alpha"})

    def test_unwritable_lock_is_a_preferences_error(self) -> None:
        with mock.patch("tmux_claude.storage.fcntl.flock", side_effect=OSError("read-only file system")):
            with self.assertRaises(PreferencesError) as ctx:
                self.store.toggle(MUTED, "alpha")
        self.assertIsInstance(ctx.exception.__cause__, OSError)


class TodoStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "todos.json"
        self.store = TodoStore(self.path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_add_and_delete_keep_order(self) -> None:
        self.store.add("alpha", "  write tests ")
        self.store.add("alpha", "ship it")
        self.store.add("beta", "review")
        self.assertEqual(self.store.items("alpha"), ["write tests", "ship it"])

        self.assertEqual(self.store.delete("alpha", 0), ["ship it"])
        self.assertEqual(TodoStore(self.path).load(), {"alpha": ["ship it"], "beta": ["review"]})

    def test_last_item_removes_the_session_key(self) -> None:
        self.store.add("alpha", "one")
        self.store.delete("alpha", 0)
        data = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(data, {"version": 1, "todos": {}})

    def test_blank_text_and_bad_index_change_nothing(self) -> None:
        self.assertEqual(self.store.add("alpha", "   "), [])
        self.assertFalse(self.path.exists())
        self.store.add("alpha", "one")
        self.assertEqual(self.store.delete("alpha", 5), ["one"])
        self.assertEqual(self.store.delete("beta", 0), [])

    def test_corrupt_file_reads_as_empty(self) -> None:
        self.path.write_text(json.dumps({"version": 1, "todos": ["nope"]}), encoding="utf-8")
        self.assertEqual(self.store.load(), {})


if __name__ == "__main__":
    unittest.main(verbosity=2)
