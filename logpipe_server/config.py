from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from logpipe.config import snake_case


@dataclass(slots=True)
class ServerConfig:
    host: str = "localhost"
    port: int = 3002
    heartbeat_interval: float = 30.0
    idle_after: float = 60.0
    max_logs: int = 1000
    enable_cors: bool = True
    display_updates: bool = True
    subscriber_queue_size: int = 256

    def __post_init__(self) -> None:
        self.port = max(1, int(self.port))
        self.heartbeat_interval = max(0.05, float(self.heartbeat_interval))
        self.idle_after = max(0.0, float(self.idle_after))
        self.max_logs = max(1, int(self.max_logs))
        self.subscriber_queue_size = max(8, int(self.subscriber_queue_size))

    def public(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "heartbeatInterval": self.heartbeat_interval,
            "maxLogs": self.max_logs,
            "enableCors": self.enable_cors,
        }

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "ServerConfig":
        known = {item.name for item in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (raw or {}).items():
            name = snake_case(str(key))
            if name in known and value is not None:
                values[name] = value
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> "ServerConfig":
        with Path(path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, Mapping):
            raise ValueError(f"config file must contain a JSON object: {path}")
        return cls.from_mapping(payload)

