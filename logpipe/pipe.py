from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Mapping, Optional, Sequence

import httpx

from .capture import (
    DEFAULT_EXCLUDED_URLS,
    CaptureFilters,
    ExceptionHooks,
    Matcher,
    TelemetryLogHandler,
    error_to_item,
    network_event_hooks,
)
from .config import TransportConfig
from .transport import HttpTransport
from .types import TelemetryItem, TelemetryKind, application_port, generate_session_id, iso_now

logger = logging.getLogger(__name__)


class LogPipe:
    """Per-application entry point wiring capture into the batching transport."""

    def __init__(
        self,
        application_name: str,
        *,
        session_id: Optional[str] = None,
        server_host: str = "localhost",
        server_port: Optional[int] = None,
        environment: str = "development",
        capture_logging: bool = True,
        capture_logger: Optional[logging.Logger] = None,
        capture_level: int = logging.DEBUG,
        capture_errors: bool = True,
        log_levels: Optional[Sequence[str]] = None,
        exclude_patterns: Sequence[Matcher] = (),
        include_patterns: Sequence[Matcher] = (),
        exclude_urls: Sequence[Matcher] = DEFAULT_EXCLUDED_URLS,
        include_urls: Sequence[Matcher] = (),
        transport_options: Optional[Mapping[str, Any]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not isinstance(application_name, str) or not application_name.strip():
            raise ValueError("application_name is required for LogPipe initialization")

        self.application_name = application_name.strip()
        self.session_id = session_id or generate_session_id()
        self.environment = environment
        self.server_host = server_host
        self.server_port = int(server_port) if server_port else application_port(self.application_name)

        options: Dict[str, Any] = dict(transport_options or {})
        options.update(
            {
                "server_host": self.server_host,
                "server_port": self.server_port,
                "application_name": self.application_name,
                "session_id": self.session_id,
            }
        )
        options.setdefault("discovery_ports", (self.server_port,))
        self.transport = HttpTransport(TransportConfig.from_mapping(options), client=client)

        self.filters = CaptureFilters(
            levels=log_levels,
            exclude_patterns=tuple(exclude_patterns),
            include_patterns=tuple(include_patterns),
            exclude_urls=tuple(exclude_urls),
            include_urls=tuple(include_urls),
        )
        self._capture_logger = (capture_logger or logging.getLogger()) if capture_logging else None
        self._handler = TelemetryLogHandler(self.transport, level=capture_level, filters=self.filters)
        self._exception_hooks = ExceptionHooks(self.transport) if capture_errors else None
        self._initialized = False
        self.started_at: Optional[str] = None

    async def init(self) -> "LogPipe":
        if self._initialized:
            return self
        await self.transport.initialize()
        if self._capture_logger is not None:
            self._capture_logger.addHandler(self._handler)
        if self._exception_hooks is not None:
            self._exception_hooks.install(asyncio.get_running_loop())
        self._initialized = True
        self.started_at = iso_now()
        logger.info(
            "log pipe initialized app=%s session=%s server=%s:%s",
            self.application_name,
            self.session_id,
            self.server_host,
            self.server_port,
        )
        return self

    def log(self, level: str, message: str, **context: Any) -> None:
        if not self.filters.allows_message(level, message):
            return
        self.transport.send(
            TelemetryItem(
                kind=TelemetryKind.ERROR if level.lower() == "error" else TelemetryKind.LOG,
                payload={"level": level.lower(), "message": message, "context": context},
            )
        )

    def capture_error(self, exc: BaseException, **context: Any) -> None:
        self.transport.send(error_to_item(exc, context=context))

    def capture_network(self, payload: Mapping[str, Any]) -> None:
        url = payload.get("url")
        if isinstance(url, str) and not self.filters.allows_url(url):
            return
        self.transport.send(TelemetryItem(kind=TelemetryKind.NETWORK, payload=dict(payload)))

    def event_hooks(self) -> Dict[str, Any]:
        """httpx event hooks; exchanges with the collector itself are never reported."""
        filters = replace(self.filters, exclude_urls=(*self.filters.exclude_urls, self.transport.endpoint))
        return network_event_hooks(self.transport, filters)

    async def flush(self) -> None:
        await self.transport.flush()

    async def destroy(self) -> None:
        if self._capture_logger is not None:
            self._capture_logger.removeHandler(self._handler)
        if self._exception_hooks is not None:
            self._exception_hooks.uninstall()
        await self.transport.flush()
        await self.transport.aclose()
        self._initialized = False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "session": self.get_session(),
            "transport": self.transport.get_stats(),
        }

    def get_session(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "applicationName": self.application_name,
            "environment": self.environment,
            "serverHost": self.server_host,
            "serverPort": self.server_port,
            "startedAt": self.started_at,
        }
