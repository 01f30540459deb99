from __future__ import annotations

import argparse
import gzip
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import __version__
from .broadcast import Broadcaster
from .collector import LogCollector
from .config import ServerConfig
from .hub import SessionHub
from .models import CollectorPayload, HealthResponse, model_to_dict, utc_now_iso

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class ClearRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    storage_type: Optional[str] = Field(default=None, alias="storageType")


class CommandRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


def create_app(
    config: Optional[ServerConfig] = None,
    *,
    hub: Optional[SessionHub] = None,
    collector: Optional[LogCollector] = None,
    broadcaster: Optional[Broadcaster] = None,
) -> FastAPI:
    resolved_config = config or ServerConfig()
    stream_bridge = broadcaster or Broadcaster(subscriber_queue_size=resolved_config.subscriber_queue_size)
    session_hub = hub or SessionHub(
        broadcaster=stream_bridge,
        heartbeat_interval=resolved_config.heartbeat_interval,
        idle_after=resolved_config.idle_after,
        server_info=resolved_config.public(),
        display=resolved_config.display_updates,
    )
    log_collector = collector or LogCollector(max_logs=resolved_config.max_logs, broadcaster=stream_bridge)
    started_at = time.monotonic()

    @asynccontextmanager
    async def _lifespan(_: FastAPI):
        await stream_bridge.start()
        await session_hub.start()
        logger.info("collector listening on %s:%s", resolved_config.host, resolved_config.port)
        try:
            yield
        finally:
            await session_hub.stop()
            await stream_bridge.stop()

    app = FastAPI(
        title="Log Pipe Collector",
        description="Receives browser telemetry batches and multiplexes storage session channels.",
        version=__version__,
        lifespan=_lifespan,
    )
    if resolved_config.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.state.config = resolved_config
    app.state.hub = session_hub
    app.state.collector = log_collector
    app.state.broadcaster = stream_bridge

    @app.get("/api/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            uptime=round(time.monotonic() - started_at, 3),
            connections=len(session_hub.connections),
            sessions=len(session_hub.registry),
            logs=len(log_collector),
            stats=log_collector.stats(),
        )

    @app.get("/health")
    async def liveness() -> dict:
        return {
            "status": "healthy",
            "uptime": round(time.monotonic() - started_at, 3),
            "version": __version__,
        }

    @app.post("/api/logs")
    async def receive_logs(request: Request) -> dict:
        body = await request.body()
        if "gzip" in request.headers.get("content-encoding", "").lower():
            try:
                body = gzip.decompress(body)
            except (OSError, EOFError) as exc:
                raise HTTPException(status_code=400, detail="Invalid gzip body") from exc
        try:
            raw = json.loads(body)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("items", raw.get("logs")), list):
            raise HTTPException(status_code=400, detail="Invalid logs format")
        try:
            payload = CollectorPayload.model_validate(raw)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail="Invalid logs format") from exc

        session_id = request.headers.get("x-session-id") or payload.metadata.session_id
        application_name = request.headers.get("x-application-name") or payload.metadata.producer_id
        received = log_collector.ingest(payload.items, session_id=session_id, application_name=application_name)
        return {"success": True, "received": received, "totalLogs": len(log_collector)}

    @app.get("/api/logs")
    async def query_logs(
        since: str | None = None,
        tail: int | None = None,
        level: str | None = None,
        pattern: str | None = None,
    ) -> dict:
        try:
            items = log_collector.query(since=since, tail=tail, level=level, pattern=pattern)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"logs": items, "total": len(items), "stats": log_collector.stats()}

    @app.get("/api/storage/state")
    async def storage_state() -> dict:
        return session_hub.storage_state()

    @app.get("/api/storage/stats")
    async def storage_stats() -> dict:
        return session_hub.stats()

    @app.get("/api/storage/sessions")
    async def storage_sessions() -> dict:
        sessions = session_hub.sessions()
        return {"sessions": sessions, "count": len(sessions)}

    @app.post("/api/storage/clear")
    async def storage_clear(payload: ClearRequest | None = None) -> dict:
        storage_type = payload.storage_type if payload is not None else None
        cleared = await session_hub.clear_state(storage_type)
        return {"success": True, "cleared": storage_type or "all", "namespaces": cleared}

    @app.post("/api/storage/sessions/{session_id}/command")
    async def storage_command(session_id: str, payload: CommandRequest) -> dict:
        delivered = await session_hub.send_command(session_id, payload.action, **payload.params)
        if not delivered:
            raise HTTPException(status_code=404, detail=f"Session not connected: {session_id}")
        return {"success": True, "sessionId": session_id, "action": payload.action, "sentAt": utc_now_iso()}

    @app.websocket("/ws")
    async def session_channel(websocket: WebSocket) -> None:
        await websocket.accept()
        connection = await session_hub.open(websocket)
        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await session_hub.receive(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await session_hub.close(connection)

    @app.websocket("/ws/events")
    async def ws_events(websocket: WebSocket) -> None:
        await websocket.accept()
        queue = stream_bridge.subscribe()
        try:
            while True:
                envelope = await queue.get()
                await websocket.send_json(model_to_dict(envelope))
        except WebSocketDisconnect:
            return
        finally:
            stream_bridge.unsubscribe(queue)

    return app


def configure_logging(level: str = "info", log_file: Optional[str] = None) -> logging.Logger:
    root = logging.getLogger("logpipe_server")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root.handlers = []
    stream = logging.StreamHandler()
    stream.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(stream)
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.propagate = False
    return root


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the log pipe collector and storage session server.")
    parser.add_argument("--config", type=str, default=None, help="JSON file with server settings.")
    parser.add_argument("--host", type=str, default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--heartbeat-interval", type=float, default=None)
    parser.add_argument("--max-logs", type=int, default=None)
    parser.add_argument("--log-level", type=str, default="info")
    parser.add_argument("--log-file", type=str, default=None)
    return parser


def load_config(args: argparse.Namespace) -> ServerConfig:
    base = ServerConfig.from_file(args.config) if args.config else ServerConfig()
    overrides = {
        "host": args.host,
        "port": args.port,
        "heartbeat_interval": args.heartbeat_interval,
        "max_logs": args.max_logs,
    }
    merged = asdict(base)
    merged.update({key: value for key, value in overrides.items() if value is not None})
    return ServerConfig.from_mapping(merged)


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(args.log_level, args.log_file)
    config = load_config(args)
    app = create_app(config)
    import uvicorn

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=str(args.log_level),
    )


if __name__ == "__main__":
    main()
