from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

Probe = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    endpoint: str
    connected: bool
    port: Optional[int] = None


class EndpointDiscovery:
    """Sequential liveness probing over candidate collector ports."""

    def __init__(
        self,
        *,
        host: str,
        ports: Iterable[int],
        server_path: str,
        health_path: str,
        default_endpoint: str,
        probe: Probe,
    ) -> None:
        self.host = host
        self.ports: Tuple[int, ...] = tuple(int(port) for port in ports)
        self.server_path = server_path
        self.health_path = health_path
        self.default_endpoint = default_endpoint
        self._probe = probe

    async def discover(self) -> DiscoveryResult:
        for port in self.ports:
            health_url = f"http://{self.host}:{port}{self.health_path}"
            try:
                alive = await self._probe(health_url)
            except Exception as exc:
                logger.debug("discovery probe failed url=%s error=%s", health_url, exc)
                continue
            if alive:
                endpoint = f"http://{self.host}:{port}{self.server_path}"
                logger.info("collector discovered endpoint=%s", endpoint)
                return DiscoveryResult(endpoint=endpoint, connected=True, port=port)

        logger.info("no collector discovered, falling back to %s", self.default_endpoint)
        return DiscoveryResult(endpoint=self.default_endpoint, connected=False)
