from __future__ import annotations

import asyncio
import gzip
import json
import time
import unittest

from fastapi.testclient import TestClient

from logpipe_server.config import ServerConfig
from logpipe_server.models import HealthResponse
from logpipe_server.server import _build_parser, create_app, load_config


def _config(**overrides) -> ServerConfig:
    values = {"heartbeat_interval": 60.0, "display_updates": False}
    values.update(overrides)
    return ServerConfig(**values)


def _batch(*messages: str) -> dict:
    return {
        "items": [{"type": "log", "timestamp": "2026-03-01T10:00:00+00:00", "payload": {"message": m}} for m in messages],
        "metadata": {"producerId": "shop", "sessionId": "clp_1_abc", "timestamp": 0, "batchSize": len(messages)},
    }


def _wait_for_session_count(client: TestClient, expected: int) -> int:
    count = -1
    for _ in range(100):
        count = client.get("/api/storage/sessions").json()["count"]
        if count == expected:
            break
        time.sleep(0.02)
    return count


class TestHealthEndpoint(unittest.TestCase):
    def test_health_endpoint_contract(self) -> None:
        app = create_app(_config())
        routes = [route for route in app.routes if getattr(route, "path", "") == "/api/health"]
        self.assertEqual(len(routes), 1)
        payload = asyncio.run(routes[0].endpoint())
        self.assertIsInstance(payload, HealthResponse)
        self.assertEqual(payload.status, "ok")
        self.assertEqual(payload.connections, 0)


class TestCollectorRoutes(unittest.TestCase):
    def setUp(self) -> None:
        self.app = create_app(_config(max_logs=50))

    def test_post_and_query_logs(self) -> None:
        with TestClient(self.app) as client:
            response = client.post(
                "/api/logs",
                json=_batch("one", "two"),
                headers={"X-Application-Name": "shop", "X-Session-Id": "clp_1_abc"},
            )
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["received"], 2)

            queried = client.get("/api/logs", params={"tail": 1}).json()
            self.assertEqual(queried["total"], 1)
            self.assertEqual(queried["logs"][0]["payload"]["message"], "two")
            self.assertEqual(queried["logs"][0]["applicationName"], "shop")

    def test_accepts_gzip_and_legacy_logs_key(self) -> None:
        with TestClient(self.app) as client:
            body = gzip.compress(json.dumps(_batch("zipped")).encode("utf-8"))
            response = client.post(
                "/api/logs",
                content=body,
                headers={"Content-Type": "application/json", "Content-Encoding": "gzip"},
            )
            self.assertEqual(response.status_code, 200)

            legacy = client.post("/api/logs", json={"logs": [{"type": "error", "message": "old client"}]})
            self.assertEqual(legacy.status_code, 200)

            stats = client.get("/api/health").json()["stats"]
            self.assertEqual(stats["totalLogs"], 1)
            self.assertEqual(stats["totalErrors"], 1)

    def test_malformed_bodies_are_rejected(self) -> None:
        with TestClient(self.app) as client:
            self.assertEqual(client.post("/api/logs", content=b"{nope").status_code, 400)
            self.assertEqual(client.post("/api/logs", json={"items": "not-a-list"}).status_code, 400)
            self.assertEqual(client.post("/api/logs", json={"other": []}).status_code, 400)
            self.assertEqual(client.get("/api/logs", params={"pattern": "(bad"}).status_code, 400)
            self.assertEqual(client.get("/api/logs", params={"since": "9" * 20}).status_code, 400)

    def test_liveness_endpoint(self) -> None:
        with TestClient(self.app) as client:
            payload = client.get("/health").json()
        self.assertEqual(payload["status"], "healthy")
        self.assertIn("version", payload)


class TestSessionChannelRoutes(unittest.TestCase):
    def setUp(self) -> None:
        self.app = create_app(_config())

    def test_session_lifecycle_over_websocket(self) -> None:
        with TestClient(self.app) as client:
            with client.websocket_connect("/ws") as ws:
                self.assertEqual(ws.receive_json()["type"], "info")

                ws.send_text(json.dumps({"type": "connect", "sessionId": "abc", "config": {"enableCookies": True}}))
                state = ws.receive_json()
                self.assertEqual(state["type"], "state")
                self.assertEqual(state["data"]["sessions"], ["abc"])

                ws.send_text(
                    json.dumps(
                        {
                            "type": "update",
                            "subType": "cookies",
                            "sessionId": "abc",
                            "data": {"added": [{"name": "sid", "value": "42"}]},
                        }
                    )
                )
                ws.send_text(json.dumps({"type": "ping"}))
                self.assertEqual(ws.receive_json()["type"], "pong")

                global_state = client.get("/api/storage/state").json()["globalState"]
                self.assertEqual(global_state["cookies"][0]["value"], "42")

                sessions = client.get("/api/storage/sessions").json()
                self.assertEqual(sessions["count"], 1)
                self.assertEqual(sessions["sessions"][0]["sessionId"], "abc")
                self.assertTrue(sessions["sessions"][0]["isActive"])

                command = client.post(
                    "/api/storage/sessions/abc/command",
                    json={"action": "get_current_state"},
                )
                self.assertEqual(command.status_code, 200)
                self.assertEqual(ws.receive_json()["data"]["action"], "get_current_state")

                ws.send_text("{not json")
                self.assertEqual(ws.receive_json()["type"], "error")

            self.assertEqual(_wait_for_session_count(client, 0), 0)
            state = client.get("/api/storage/state").json()
            self.assertEqual(state["globalState"]["cookies"][0]["name"], "sid")

            missing = client.post("/api/storage/sessions/abc/command", json={"action": "get_current_state"})
            self.assertEqual(missing.status_code, 404)

            stats = client.get("/api/storage/stats").json()
            self.assertEqual(stats["totalConnections"], 1)
            self.assertEqual(stats["storageUpdates"], 1)

    def test_clear_endpoint(self) -> None:
        hub = self.app.state.hub
        hub.state.apply_update("localStorage", {"added": [{"key": "a", "value": "1"}]})
        hub.state.apply_update("cookies", {"added": [{"name": "c", "value": "1"}]})

        with TestClient(self.app) as client:
            partial = client.post("/api/storage/clear", json={"storageType": "localStorage"}).json()
            self.assertEqual(partial["cleared"], "localStorage")
            self.assertEqual(hub.state.sizes()["cookies"], 1)

            everything = client.post("/api/storage/clear").json()
            self.assertEqual(everything["cleared"], "all")
            self.assertEqual(sum(hub.state.sizes().values()), 0)


class TestEntryPoint(unittest.TestCase):
    def test_cli_flags_override_defaults(self) -> None:
        args = _build_parser().parse_args(["--port", "3055", "--max-logs", "20"])
        config = load_config(args)
        self.assertEqual(config.port, 3055)
        self.assertEqual(config.max_logs, 20)
        self.assertEqual(config.heartbeat_interval, 30.0)


if __name__ == "__main__":
    unittest.main()
