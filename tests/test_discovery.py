from __future__ import annotations

import unittest
from typing import List

import httpx

from logpipe.config import TransportConfig
from logpipe.discovery import EndpointDiscovery
from logpipe.transport import HttpTransport


class TestEndpointDiscovery(unittest.IsolatedAsyncioTestCase):
    async def test_selects_first_live_port_in_order(self) -> None:
        probed: List[str] = []

        async def probe(url: str) -> bool:
            probed.append(url)
            return url.startswith("http://localhost:3003")

        discovery = EndpointDiscovery(
            host="localhost",
            ports=[3001, 3002, 3003, 3004],
            server_path="/api/logs",
            health_path="/api/health",
            default_endpoint="http://localhost:3001/api/logs",
            probe=probe,
        )
        result = await discovery.discover()

        self.assertTrue(result.connected)
        self.assertEqual(result.port, 3003)
        self.assertEqual(result.endpoint, "http://localhost:3003/api/logs")
        self.assertEqual(
            probed,
            [
                "http://localhost:3001/api/health",
                "http://localhost:3002/api/health",
                "http://localhost:3003/api/health",
            ],
        )

    async def test_falls_back_to_default_without_raising(self) -> None:
        async def probe(url: str) -> bool:
            raise httpx.ConnectError(f"refused {url}")

        discovery = EndpointDiscovery(
            host="localhost",
            ports=[3001, 3002],
            server_path="/api/logs",
            health_path="/api/health",
            default_endpoint="http://localhost:3001/api/logs",
            probe=probe,
        )
        result = await discovery.discover()

        self.assertFalse(result.connected)
        self.assertIsNone(result.port)
        self.assertEqual(result.endpoint, "http://localhost:3001/api/logs")


class TestTransportDiscovery(unittest.IsolatedAsyncioTestCase):
    async def test_transport_uses_discovered_endpoint(self) -> None:
        posted: List[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/health":
                return httpx.Response(200 if request.url.port == 3002 else 503)
            posted.append(str(request.url))
            return httpx.Response(200)

        config = TransportConfig(batch_size=1, discovery_ports=(3001, 3002, 3003), health_check_interval=60.0)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpTransport(config, client=client)
            connected = await transport.initialize()
            try:
                self.assertTrue(connected)
                self.assertTrue(transport.is_healthy)
                self.assertEqual(transport.endpoint, "http://localhost:3002/api/logs")

                transport.send({"type": "log", "payload": {"message": "hello"}})
                await transport.flush()
                self.assertEqual(posted, ["http://localhost:3002/api/logs"])
            finally:
                await transport.aclose()

    async def test_unreachable_collector_leaves_transport_disconnected(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        config = TransportConfig(server_port=3001, discovery_ports=(3001, 3002), health_check_interval=60.0)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpTransport(config, client=client)
            connected = await transport.initialize()
            try:
                self.assertFalse(connected)
                self.assertFalse(transport.is_connected)
                self.assertEqual(transport.endpoint, "http://localhost:3001/api/logs")
            finally:
                await transport.aclose()


if __name__ == "__main__":
    unittest.main()
