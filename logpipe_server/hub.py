"""Session channel coordination: registration, state merge, commands and liveness."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union

from .broadcast import Broadcaster
from .display import display_update
from .models import (
    CHANNEL_SESSIONS,
    CHANNEL_STORAGE,
    SERVER_COMMAND,
    SERVER_ERROR,
    SERVER_INFO,
    SERVER_PING,
    SERVER_PONG,
    SERVER_STATE,
    ConnectMessage,
    MessageError,
    PingMessage,
    PongMessage,
    ServerMessage,
    StreamEnvelope,
    UpdateMessage,
    model_to_dict,
    parse_client_message,
    utc_now_iso,
)
from .registry import Session, SessionRegistry
from .state import GlobalState

logger = logging.getLogger(__name__)


class ConnectionPhase(str, Enum):
    OPEN = "open"
    REGISTERED = "registered"
    ACTIVE = "active"
    IDLE = "idle"
    CLOSED = "closed"


class MessageSocket(Protocol):
    async def send_json(self, data: Any) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class ClientConnection:
    """Hub-side bookkeeping for one accepted channel socket."""

    def __init__(self, socket: MessageSocket, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.socket = socket
        self.connection_id = uuid.uuid4().hex
        self.phase = ConnectionPhase.OPEN
        self.is_alive = True
        self.opened_at = utc_now_iso()
        self._clock = clock
        self.last_seen = clock()

    def mark_seen(self) -> None:
        self.is_alive = True
        self.last_seen = self._clock()

    def idle_for(self) -> float:
        return self._clock() - self.last_seen

    def __repr__(self) -> str:
        return f"ClientConnection({self.connection_id[:8]}, {self.phase.value})"


class SessionHub:
    """Owns the registry and global state for every session channel.

    Mutations of both are serialized by one lock; socket writes happen
    outside of it so a slow peer never stalls the others.
    """

    def __init__(
        self,
        *,
        broadcaster: Optional[Broadcaster] = None,
        heartbeat_interval: float = 30.0,
        idle_after: float = 60.0,
        server_info: Optional[Mapping[str, Any]] = None,
        display: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = SessionRegistry()
        self.state = GlobalState()
        self.broadcaster = broadcaster
        self.heartbeat_interval = max(0.05, float(heartbeat_interval))
        self.idle_after = max(0.0, float(idle_after))
        self.server_info: Dict[str, Any] = dict(server_info or {})
        self.display = display
        self._clock = clock
        self._lock = asyncio.Lock()
        self._connections: Dict[str, ClientConnection] = {}
        self._heartbeat_task: Optional[asyncio.Task[Any]] = None
        self._started_at = clock()
        self._counters: Dict[str, int] = {
            "totalConnections": 0,
            "messagesReceived": 0,
            "storageUpdates": 0,
            "errors": 0,
            "terminated": 0,
        }

    @property
    def connections(self) -> List[ClientConnection]:
        return list(self._connections.values())

    async def start(self) -> None:
        if self._heartbeat_task is not None:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="logpipe-heartbeat")

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        for connection in list(self._connections.values()):
            await self._close_socket(connection, code=1001)
            await self.close(connection)

    async def open(self, socket: MessageSocket) -> ClientConnection:
        connection = ClientConnection(socket, clock=self._clock)
        async with self._lock:
            self._connections[connection.connection_id] = connection
            self._counters["totalConnections"] += 1
        logger.info("channel opened connection=%s", connection.connection_id[:8])
        await self._send(
            connection,
            SERVER_INFO,
            {
                "message": "Connected to log pipe collector",
                "serverTime": utc_now_iso(),
                "connectionId": connection.connection_id,
                "config": self.server_info,
            },
        )
        return connection

    async def receive(self, connection: ClientConnection, raw: Union[str, bytes, Mapping[str, Any]]) -> None:
        connection.mark_seen()
        self._counters["messagesReceived"] += 1
        try:
            message = parse_client_message(raw)
        except MessageError as exc:
            self._counters["errors"] += 1
            logger.warning("rejected message connection=%s: %s", connection.connection_id[:8], exc)
            await self._send(connection, SERVER_ERROR, {"message": str(exc)})
            return

        if isinstance(message, ConnectMessage):
            await self._register(connection, message)
        elif isinstance(message, UpdateMessage):
            await self._update(connection, message)
        elif isinstance(message, PingMessage):
            await self._send(connection, SERVER_PONG, {"timestamp": message.timestamp})
        elif isinstance(message, PongMessage):
            pass

    async def close(self, connection: ClientConnection) -> List[str]:
        async with self._lock:
            if self._connections.pop(connection.connection_id, None) is None:
                return []
            connection.phase = ConnectionPhase.CLOSED
            removed = self.registry.remove_connection(connection)
        for session_id in removed:
            logger.info("session disconnected session=%s", session_id)
            self._publish(CHANNEL_SESSIONS, session_id, {"event": "disconnected", "sessionId": session_id})
        return removed

    async def send_command(self, session_id: str, action: str, **params: Any) -> bool:
        session = self.registry.get(session_id)
        if session is None:
            return False
        connection: ClientConnection = session.connection
        if connection.connection_id not in self._connections:
            return False
        payload = {"action": action}
        payload.update(params)
        return await self._send(connection, SERVER_COMMAND, payload)

    async def sweep(self) -> List[str]:
        """One heartbeat tick: reap connections silent since the previous ping, ping the rest."""
        terminated: List[str] = []
        for connection in list(self._connections.values()):
            if not connection.is_alive:
                logger.warning("terminating unresponsive connection=%s", connection.connection_id[:8])
                terminated.append(connection.connection_id)
                self._counters["terminated"] += 1
                await self._close_socket(connection, code=1001)
                await self.close(connection)
                continue
            connection.is_alive = False
            await self._send(connection, SERVER_PING, {"timestamp": utc_now_iso()})
        return terminated

    async def clear_state(self, namespace: Optional[str] = None) -> List[str]:
        async with self._lock:
            cleared = self.state.clear(namespace)
        logger.info("cleared global state namespace=%s", namespace or "all")
        return cleared

    def phase_of(self, connection: ClientConnection) -> ConnectionPhase:
        if connection.phase in (ConnectionPhase.ACTIVE, ConnectionPhase.IDLE):
            return ConnectionPhase.IDLE if connection.idle_for() >= self.idle_after else ConnectionPhase.ACTIVE
        return connection.phase

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self._counters)
        stats["uptime"] = round(self._clock() - self._started_at, 3)
        stats["activeConnections"] = len(self._connections)
        stats["sessionsCount"] = len(self.registry)
        stats["globalStateSize"] = self.state.sizes()
        return stats

    def storage_state(self) -> Dict[str, Any]:
        return {
            "sessions": [session.session_id for session in self.registry.list()],
            "globalState": self.state.to_dict(),
            "stats": self.stats(),
        }

    def sessions(self) -> List[Dict[str, Any]]:
        output: List[Dict[str, Any]] = []
        for session in self.registry.list():
            connection: ClientConnection = session.connection
            record = session.to_dict()
            record["phase"] = self.phase_of(connection).value
            record["isActive"] = connection.connection_id in self._connections
            output.append(record)
        return output

    async def _register(self, connection: ClientConnection, message: ConnectMessage) -> None:
        session_id = message.session_id or f"clp_session_{connection.connection_id[:12]}"
        async with self._lock:
            previous = self.registry.get(session_id)
            session = self.registry.register(session_id, connection, message.config)
            connection.phase = ConnectionPhase.REGISTERED
            snapshot = self.storage_state()
        if previous is not None and previous.connection is not connection:
            logger.info("session superseded session=%s", session_id)
        logger.info("session registered session=%s connection=%s", session_id, connection.connection_id[:8])
        self._publish(CHANNEL_SESSIONS, session_id, {"event": "registered", "session": session.to_dict()})
        await self._send(connection, SERVER_STATE, snapshot)

    async def _update(self, connection: ClientConnection, message: UpdateMessage) -> None:
        async with self._lock:
            session: Optional[Session] = self.registry.session_for(connection)
            if session is not None:
                self.registry.touch(session.session_id)
                connection.phase = ConnectionPhase.ACTIVE
                self.state.apply_update(message.subtype, message.data, session_id=session.session_id)
                self._counters["storageUpdates"] += 1

        if session is None:
            self._counters["errors"] += 1
            await self._send(connection, SERVER_ERROR, {"message": "update received before connect"})
            return

        if self.display:
            display_update(message.subtype, message.data, session.session_id)
        self._publish(
            CHANNEL_STORAGE,
            session.session_id,
            {"subtype": message.subtype, "sessionId": session.session_id, "data": message.data},
            timestamp=message.timestamp,
        )

    async def _send(self, connection: ClientConnection, message_type: str, data: Any) -> bool:
        if connection.phase == ConnectionPhase.CLOSED:
            return False
        try:
            await connection.socket.send_json(model_to_dict(ServerMessage.build(message_type, data)))
        except Exception:
            logger.debug("send failed connection=%s type=%s", connection.connection_id[:8], message_type, exc_info=True)
            return False
        return True

    async def _close_socket(self, connection: ClientConnection, *, code: int) -> None:
        try:
            await connection.socket.close(code=code)
        except Exception:
            logger.debug("close failed connection=%s", connection.connection_id[:8], exc_info=True)

    def _publish(self, channel: str, source: str, data: Mapping[str, Any], timestamp: Optional[str] = None) -> None:
        if self.broadcaster is None:
            return
        self.broadcaster.publish(StreamEnvelope.build(channel=channel, source=source, data=data, timestamp=timestamp))

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("heartbeat sweep failed")
