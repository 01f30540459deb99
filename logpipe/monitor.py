"""Session-channel client that streams storage changes to the collector."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .changes import ChangeSet, SnapshotTracker
from .config import MonitorConfig
from .storage import IndexedDBInfoSource, StorageSource
from .types import generate_session_id, iso_now

logger = logging.getLogger(__name__)

NAMESPACE_COOKIES = "cookies"
NAMESPACE_LOCAL_STORAGE = "localStorage"
NAMESPACE_SESSION_STORAGE = "sessionStorage"
NAMESPACE_INDEXED_DB = "indexedDB"

_NAMESPACE_FLAGS = {
    NAMESPACE_COOKIES: "enable_cookies",
    NAMESPACE_LOCAL_STORAGE: "enable_local_storage",
    NAMESPACE_SESSION_STORAGE: "enable_session_storage",
    NAMESPACE_INDEXED_DB: "enable_indexed_db",
}


class StorageMonitor:
    """Polls and intercepts storage sources, reporting diffs over one channel.

    Two producers feed the same change detector: the polling loop and the
    mutation listeners of the sources. Both may report the same change; the
    detector's wholesale snapshot replacement keeps the second report empty.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        *,
        sources: Mapping[str, StorageSource],
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.config = config or MonitorConfig()
        if not self.config.session_id:
            self.config.session_id = generate_session_id("clp_storage")
        self._sources: Dict[str, StorageSource] = {
            namespace: source
            for namespace, source in sources.items()
            if getattr(self.config, _NAMESPACE_FLAGS.get(namespace, ""), True)
        }
        self._connect = connect or websockets.connect
        self._tracker = SnapshotTracker()
        self._outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._tasks: List[asyncio.Task[Any]] = []
        self._listeners: Dict[str, Callable[[str, tuple], None]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ws: Any = None

        self.is_connected = False
        self.is_monitoring = False
        self.server_info: Dict[str, Any] = {}
        self.last_state: Optional[Dict[str, Any]] = None
        self.last_pong_at: Optional[str] = None

    @property
    def session_id(self) -> str:
        return str(self.config.session_id)

    @property
    def namespaces(self) -> List[str]:
        return list(self._sources)

    async def start(self) -> "StorageMonitor":
        if self.is_monitoring:
            return self

        self._loop = asyncio.get_running_loop()
        self._ws = await self._connect(self.config.url, open_timeout=self.config.open_timeout)
        self.is_connected = True
        await self._ws.send(
            json.dumps(
                {
                    "type": "connect",
                    "sessionId": self.session_id,
                    "timestamp": iso_now(),
                    "config": self.config.enabled_kinds(),
                }
            )
        )

        for namespace, source in self._sources.items():
            self._tracker.seed(namespace, source.snapshot())
        self.is_monitoring = True
        self._enqueue(self._update_message("initial_state", self.current_state()))

        self._tasks = [
            asyncio.create_task(self._writer_loop(), name="storage-monitor-writer"),
            asyncio.create_task(self._reader_loop(), name="storage-monitor-reader"),
            asyncio.create_task(self._poll_loop(), name="storage-monitor-poll"),
            asyncio.create_task(self._ping_loop(), name="storage-monitor-ping"),
        ]
        self._attach_listeners()
        logger.info("storage monitor started session=%s url=%s", self.session_id, self.config.url)
        return self

    async def stop(self) -> None:
        self.is_monitoring = False
        self._detach_listeners()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self._ws is not None:
            try:
                await self._ws.close()
            except ConnectionClosed:
                pass
            self._ws = None
        self.is_connected = False
        logger.info("storage monitor stopped session=%s", self.session_id)

    def current_state(self) -> Dict[str, Any]:
        state: Dict[str, Any] = {}
        for namespace, source in self._sources.items():
            if isinstance(source, IndexedDBInfoSource):
                state[namespace] = source.info()
            else:
                state[namespace] = [entry.to_dict() for entry in source.snapshot().values()]
        return state

    def check(self, namespace: str, operation: Optional[str] = None, args: tuple = ()) -> ChangeSet:
        source = self._sources.get(namespace)
        if source is None or not self.is_monitoring:
            return ChangeSet()

        current = source.snapshot()
        changes = self._tracker.check(namespace, current)
        if changes.has_changes:
            data = changes.to_dict()
            data["current"] = [entry.to_dict() for entry in current.values()]
            if operation:
                data["operation"] = operation
                data["args"] = list(args)
            self._enqueue(self._update_message(namespace, data))
        return changes

    def check_all(self) -> Dict[str, ChangeSet]:
        return {namespace: self.check(namespace) for namespace in list(self._sources)}

    def _update_message(self, subtype: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "type": "update",
            "subType": subtype,
            "sessionId": self.session_id,
            "timestamp": iso_now(),
            "data": dict(data),
        }

    def _enqueue(self, message: Dict[str, Any]) -> None:
        self._outbox.put_nowait(message)

    async def _writer_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            if self._ws is None:
                continue
            try:
                await self._ws.send(json.dumps(message))
            except ConnectionClosed:
                self.is_connected = False
                logger.debug("channel closed, dropped message type=%s", message.get("type"))

    async def _reader_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.debug("ignoring non-JSON server message")
                    continue
                if isinstance(message, dict):
                    self._handle_server_message(message)
        except ConnectionClosed:
            pass
        finally:
            self.is_connected = False

    async def _poll_loop(self) -> None:
        while self.is_monitoring:
            await asyncio.sleep(self.config.poll_interval)
            try:
                self.check_all()
            except Exception:
                logger.warning("storage poll failed", exc_info=True)

    async def _ping_loop(self) -> None:
        while self.is_monitoring:
            await asyncio.sleep(self.config.ping_interval)
            self._enqueue({"type": "ping", "timestamp": iso_now()})

    def _handle_server_message(self, message: Mapping[str, Any]) -> None:
        message_type = str(message.get("type", "")).removeprefix("storage_")
        data = message.get("data")
        payload = data if isinstance(data, Mapping) else {}

        if message_type == "info":
            self.server_info = dict(payload)
        elif message_type == "state":
            self.last_state = dict(payload)
        elif message_type == "ping":
            self._enqueue({"type": "pong", "timestamp": iso_now()})
        elif message_type == "pong":
            self.last_pong_at = str(message.get("timestamp") or iso_now())
        elif message_type == "command":
            self._handle_command(payload)
        elif message_type == "error":
            logger.debug("server rejected message: %s", payload.get("message"))

    def _handle_command(self, command: Mapping[str, Any]) -> None:
        action = command.get("action")
        if action == "get_current_state":
            self._enqueue(self._update_message("current_state", self.current_state()))
        elif action == "clear_storage":
            namespace = str(command.get("storageType", ""))
            source = self._sources.get(namespace)
            if source is not None:
                source.clear()
                self.check(namespace, "clear")
        else:
            logger.debug("unknown command action=%s", action)

    def _attach_listeners(self) -> None:
        for namespace, source in self._sources.items():
            add_listener = getattr(source, "add_listener", None)
            if not callable(add_listener):
                continue
            listener = self._make_listener(namespace)
            add_listener(listener)
            self._listeners[namespace] = listener

    def _detach_listeners(self) -> None:
        for namespace, listener in self._listeners.items():
            remove_listener = getattr(self._sources.get(namespace), "remove_listener", None)
            if callable(remove_listener):
                remove_listener(listener)
        self._listeners = {}

    def _make_listener(self, namespace: str) -> Callable[[str, tuple], None]:
        def _on_mutation(operation: str, args: tuple) -> None:
            if self._loop is None or self._loop.is_closed():
                return
            self._loop.call_soon_threadsafe(self.check, namespace, operation, args)

        return _on_mutation
