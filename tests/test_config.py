from __future__ import annotations

import json
import re
import tempfile
import unittest
from pathlib import Path

from logpipe.config import ConfigStore, MonitorConfig, TransportConfig, snake_case
from logpipe.types import TelemetryItem, TelemetryKind, application_port, generate_session_id
from logpipe_server.config import ServerConfig
from logpipe_server.models import ServerMessage


class TestTransportConfig(unittest.TestCase):
    def test_defaults(self) -> None:
        config = TransportConfig()
        self.assertEqual(config.default_endpoint, "http://localhost:3001/api/logs")
        self.assertEqual(config.batch_size, 10)
        self.assertEqual(config.max_batch_size, 100)
        self.assertEqual(config.max_retries, 3)
        self.assertEqual(config.discovery_ports, (3001, 3002, 3003, 3004, 3005))

    def test_from_mapping_accepts_camel_case_and_clamps(self) -> None:
        config = TransportConfig.from_mapping(
            {
                "serverPort": "4000",
                "batchSize": 0,
                "maxRetries": -2,
                "retryBackoffMultiplier": 0.5,
                "unknownOption": True,
                "batch_timeout": 0.25,
            }
        )
        self.assertEqual(config.server_port, 4000)
        self.assertEqual(config.batch_size, 1)
        self.assertEqual(config.max_retries, 0)
        self.assertEqual(config.retry_backoff_multiplier, 1.0)
        self.assertEqual(config.batch_timeout, 0.25)

    def test_monitor_config_flags(self) -> None:
        config = MonitorConfig.from_mapping({"enableIndexedDB": False, "serverPort": 3010})
        self.assertFalse(config.enable_indexed_db)
        self.assertEqual(config.url, "ws://localhost:3010/ws")
        self.assertEqual(
            config.enabled_kinds(),
            {
                "enableCookies": True,
                "enableLocalStorage": True,
                "enableSessionStorage": True,
                "enableIndexedDB": False,
            },
        )

    def test_server_config_from_mapping(self) -> None:
        config = ServerConfig.from_mapping({"heartbeatInterval": 5, "maxLogs": 0, "port": 3100})
        self.assertEqual(config.heartbeat_interval, 5.0)
        self.assertEqual(config.max_logs, 1)
        self.assertEqual(config.port, 3100)

    def test_server_config_shares_key_normalization(self) -> None:
        config = ServerConfig.from_mapping({"subscriberQueueSize": 64, "idle_after": 5, "displayUpdates": False})
        self.assertEqual(config.subscriber_queue_size, 64)
        self.assertEqual(config.idle_after, 5.0)
        self.assertFalse(config.display_updates)
        self.assertEqual(snake_case("enableIndexedDB"), "enable_indexed_db")


class TestConfigStore(unittest.TestCase):
    def test_global_defaults_and_round_trip(self) -> None:
        with tempfile.TemporaryDirectory(prefix="logpipe_config_") as temp_dir:
            store = ConfigStore(Path(temp_dir) / "clp")
            self.assertEqual(store.load_global()["defaultHost"], "localhost")

            saved = store.save_global({"defaultHost": "0.0.0.0"})
            self.assertIn("lastUpdated", saved)
            self.assertEqual(store.load_global()["defaultHost"], "0.0.0.0")
            self.assertFalse(list((Path(temp_dir) / "clp").glob("*.tmp")))

    def test_server_entries(self) -> None:
        with tempfile.TemporaryDirectory(prefix="logpipe_config_") as temp_dir:
            store = ConfigStore(temp_dir)
            self.assertIsNone(store.load_server("shop"))
            self.assertEqual(store.list_servers(), [])

            store.save_server("shop", {"port": 3042, "applicationName": "shop"})
            store.save_server("admin", {"port": 3043, "applicationName": "admin"})
            self.assertEqual(store.load_server("shop")["port"], 3042)
            self.assertEqual(sorted(entry["applicationName"] for entry in store.list_servers()), ["admin", "shop"])

            self.assertTrue(store.delete_server("shop"))
            self.assertFalse(store.delete_server("shop"))
            self.assertIsNone(store.load_server("shop"))

    def test_rejects_path_like_names_and_ignores_corrupt_files(self) -> None:
        with tempfile.TemporaryDirectory(prefix="logpipe_config_") as temp_dir:
            store = ConfigStore(temp_dir)
            with self.assertRaises(ValueError):
                store.save_server("../escape", {})
            store.servers_dir.mkdir(parents=True, exist_ok=True)
            (store.servers_dir / "broken.json").write_text("{not json", encoding="utf-8")
            self.assertIsNone(store.load_server("broken"))
            self.assertEqual(store.list_servers(), [])


class TestTypes(unittest.TestCase):
    def test_application_port_is_stable_and_in_range(self) -> None:
        port = application_port("my-shop")
        self.assertEqual(port, application_port("my-shop"))
        self.assertTrue(3001 <= port <= 3100)
        self.assertEqual(application_port(""), 3001)
        for name in ("a", "dashboard", "x" * 200):
            self.assertTrue(3001 <= application_port(name) <= 3100)

    def test_application_port_matches_thirty_two_bit_hash(self) -> None:
        # "ab": ((0 << 5) - 0 + 97) = 97, ((97 << 5) - 97 + 98) = 3105
        self.assertEqual(application_port("ab"), 3001 + 3105 % 100)

    def test_session_id_format(self) -> None:
        session_id = generate_session_id()
        self.assertRegex(session_id, re.compile(r"^clp_\d{13}_[a-z0-9]{9}$"))
        self.assertTrue(generate_session_id("clp_storage").startswith("clp_storage_"))

    def test_item_wire_form(self) -> None:
        item = TelemetryItem(kind=TelemetryKind.NETWORK, payload={"path": Path("a/b")}, correlation_id="c-1")
        payload = item.to_dict()
        self.assertEqual(payload["type"], "network")
        self.assertEqual(payload["correlationId"], "c-1")
        self.assertEqual(payload["payload"], {"path": "a/b"})
        json.dumps(payload)

    def test_server_messages_coerce_payloads_like_items(self) -> None:
        message = ServerMessage.build("info", {"kind": TelemetryKind.LOG, "tags": frozenset(["a"])})
        self.assertEqual(message.data, {"kind": "log", "tags": ["a"]})


if __name__ == "__main__":
    unittest.main()
