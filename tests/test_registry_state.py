from __future__ import annotations

import unittest

from logpipe_server.display import format_update, truncate_value
from logpipe_server.registry import SessionRegistry
from logpipe_server.state import GlobalState


class _Conn:
    def __init__(self, name: str) -> None:
        self.connection_id = name


class TestSessionRegistry(unittest.TestCase):
    def test_last_registration_wins(self) -> None:
        registry = SessionRegistry()
        first, second = _Conn("one"), _Conn("two")
        registry.register("abc", first, {"enableCookies": True})
        registry.register("abc", second)

        self.assertEqual(len(registry), 1)
        self.assertIs(registry.get("abc").connection, second)
        self.assertIsNone(registry.session_for(first))

    def test_removing_superseded_connection_keeps_new_binding(self) -> None:
        registry = SessionRegistry()
        first, second = _Conn("one"), _Conn("two")
        registry.register("abc", first)
        registry.register("abc", second)

        self.assertEqual(registry.remove_connection(first), [])
        self.assertIn("abc", registry)
        self.assertEqual(registry.remove_connection(second), ["abc"])
        self.assertNotIn("abc", registry)

    def test_connection_carries_at_most_one_session(self) -> None:
        registry = SessionRegistry()
        conn = _Conn("one")
        registry.register("old", conn)
        registry.register("new", conn)
        self.assertEqual([session.session_id for session in registry.list()], ["new"])

    def test_touch_refreshes_activity(self) -> None:
        registry = SessionRegistry()
        session = registry.register("abc", _Conn("one"))
        session.last_activity_at = "2000-01-01T00:00:00+00:00"
        registry.touch("abc")
        self.assertNotEqual(session.last_activity_at, "2000-01-01T00:00:00+00:00")
        self.assertEqual(session.updates, 1)
        self.assertIsNone(registry.touch("missing"))
        self.assertEqual(session.to_dict()["connectionId"], "one")


class TestGlobalState(unittest.TestCase):
    def test_delta_merge(self) -> None:
        state = GlobalState()
        state.apply_update(
            "localStorage",
            {"added": [{"key": "theme", "value": "light"}, {"key": "lang", "value": "en"}]},
            session_id="abc",
        )
        state.apply_update(
            "localStorage",
            {
                "modified": [{"key": "theme", "value": "dark", "oldValue": "light"}],
                "deleted": [{"key": "lang", "value": "en"}],
            },
            session_id="xyz",
        )

        theme = state.get("localStorage", "theme")
        self.assertEqual(theme["value"], "dark")
        self.assertEqual(theme["lastUpdatedBy"], "xyz")
        self.assertIn("lastUpdated", theme)
        self.assertNotIn("oldValue", theme)
        self.assertIsNone(state.get("localStorage", "lang"))
        self.assertEqual(state.sizes()["localStorage"], 1)

    def test_cookies_keyed_by_name(self) -> None:
        state = GlobalState()
        state.apply_update("cookies", {"added": [{"name": "sid", "key": "ignored", "value": "1"}]})
        self.assertEqual(state.get("cookies", "sid")["value"], "1")

    def test_snapshot_subtypes_upsert_every_entry(self) -> None:
        state = GlobalState()
        touched = state.apply_update(
            "initial_state",
            {
                "localStorage": [{"key": "a", "value": "1"}],
                "sessionStorage": [{"key": "b", "value": "2"}],
                "indexedDB": {"available": True, "databases": ["db"]},
            },
        )
        self.assertEqual(touched, 3)
        self.assertEqual(state.sizes(), {"cookies": 0, "localStorage": 1, "sessionStorage": 1, "indexedDB": 1})
        self.assertEqual(state.get("indexedDB", "info")["databases"], ["db"])

    def test_unknown_subtype_is_stored_verbatim(self) -> None:
        state = GlobalState()
        state.apply_update("cacheStorage", {"caches": ["v1"]}, session_id="abc")
        extras = state.to_dict()["extras"]
        self.assertEqual(extras["cacheStorage"]["data"], {"caches": ["v1"]})

    def test_clear_by_namespace_and_all(self) -> None:
        state = GlobalState()
        state.apply_update("localStorage", {"added": [{"key": "a", "value": "1"}]})
        state.apply_update("cookies", {"added": [{"name": "c", "value": "1"}]})

        self.assertEqual(state.clear("localStorage"), ["localStorage"])
        self.assertEqual(state.sizes()["cookies"], 1)
        self.assertEqual(state.clear("nope"), [])
        state.clear()
        self.assertEqual(sum(state.sizes().values()), 0)

    def test_malformed_payloads_are_ignored(self) -> None:
        state = GlobalState()
        self.assertEqual(state.apply_update("localStorage", "not a mapping"), 0)
        self.assertEqual(state.apply_update("localStorage", {"added": "nope", "deleted": [1, None]}), 0)
        self.assertEqual(state.apply_update("localStorage", {"added": [{"value": "no key"}]}), 0)


class TestDisplay(unittest.TestCase):
    def test_format_update_lines(self) -> None:
        lines = format_update(
            "localStorage",
            {
                "added": [{"key": "a", "value": "1"}],
                "modified": [{"key": "b", "value": "new", "oldValue": "old"}],
                "deleted": [{"key": "c"}],
            },
            "clp_storage_123_abcdefghij",
        )
        self.assertEqual(lines[0], "[abcdefgh] localStorage")
        self.assertIn("  + localStorage: a = 1", lines)
        self.assertIn("  ~ localStorage: b", lines)
        self.assertIn("    - old", lines)
        self.assertIn("    + new", lines)
        self.assertIn("  - localStorage: c", lines)

    def test_truncate_value(self) -> None:
        self.assertEqual(truncate_value("x" * 120), "x" * 100 + "...")
        self.assertEqual(truncate_value({"a": 1}), '{"a": 1}')


if __name__ == "__main__":
    unittest.main()
