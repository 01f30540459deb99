from __future__ import annotations

import json
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .types import iso_now

DEFAULT_CONFIG_DIR = Path.home() / ".console-log-pipe"

_GLOBAL_DEFAULTS: Dict[str, Any] = {
    "defaultHost": "localhost",
    "defaultEnvironment": "development",
    "maxLogRetention": 7,
    "enableAnalytics": False,
    "theme": "auto",
}


@dataclass(slots=True)
class TransportConfig:
    server_host: str = "localhost"
    server_port: int = 3001
    server_path: str = "/api/logs"
    health_path: str = "/api/health"

    batch_size: int = 10
    batch_timeout: float = 1.0
    max_batch_size: int = 100

    max_retries: int = 3
    retry_delay: float = 1.0
    retry_backoff_multiplier: float = 2.0
    max_retry_delay: float = 30.0
    retry_interval: float = 1.0

    enable_compression: bool = True
    compression_threshold: int = 1024

    health_check_interval: float = 30.0
    connection_timeout: float = 5.0

    enable_auto_discovery: bool = True
    discovery_ports: Tuple[int, ...] = (3001, 3002, 3003, 3004, 3005)

    application_name: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.server_port = max(1, int(self.server_port))
        self.batch_size = max(1, int(self.batch_size))
        self.max_batch_size = max(self.batch_size, int(self.max_batch_size))
        self.batch_timeout = max(0.0, float(self.batch_timeout))
        self.max_retries = max(0, int(self.max_retries))
        self.retry_delay = max(0.0, float(self.retry_delay))
        self.retry_backoff_multiplier = max(1.0, float(self.retry_backoff_multiplier))
        self.max_retry_delay = max(self.retry_delay, float(self.max_retry_delay))
        self.retry_interval = max(0.05, float(self.retry_interval))
        self.compression_threshold = max(0, int(self.compression_threshold))
        self.health_check_interval = max(0.1, float(self.health_check_interval))
        self.connection_timeout = max(0.01, float(self.connection_timeout))
        self.discovery_ports = tuple(int(port) for port in self.discovery_ports)

    @property
    def default_endpoint(self) -> str:
        return f"http://{self.server_host}:{self.server_port}{self.server_path}"

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "TransportConfig":
        return cls(**_known_fields(cls, raw))


@dataclass(slots=True)
class MonitorConfig:
    server_host: str = "localhost"
    server_port: int = 3002
    channel_path: str = "/ws"
    session_id: Optional[str] = None
    enable_cookies: bool = True
    enable_local_storage: bool = True
    enable_session_storage: bool = True
    enable_indexed_db: bool = True
    poll_interval: float = 1.0
    ping_interval: float = 25.0
    open_timeout: float = 5.0

    def __post_init__(self) -> None:
        self.server_port = max(1, int(self.server_port))
        self.poll_interval = max(0.01, float(self.poll_interval))
        self.ping_interval = max(0.05, float(self.ping_interval))
        self.open_timeout = max(0.1, float(self.open_timeout))

    @property
    def url(self) -> str:
        return f"ws://{self.server_host}:{self.server_port}{self.channel_path}"

    def enabled_kinds(self) -> Dict[str, bool]:
        return {
            "enableCookies": self.enable_cookies,
            "enableLocalStorage": self.enable_local_storage,
            "enableSessionStorage": self.enable_session_storage,
            "enableIndexedDB": self.enable_indexed_db,
        }

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "MonitorConfig":
        return cls(**_known_fields(cls, raw))


class ConfigStore:
    """JSON configuration directory shared by the launcher, server and clients."""

    def __init__(self, root: str | Path = DEFAULT_CONFIG_DIR) -> None:
        self.root = Path(root)
        self.servers_dir = self.root / "servers"
        self.global_path = self.root / "config.json"

    def load_global(self) -> Dict[str, Any]:
        payload = _load_json(self.global_path)
        if payload is None:
            return dict(_GLOBAL_DEFAULTS)
        return payload

    def save_global(self, config: Mapping[str, Any]) -> Dict[str, Any]:
        payload = {**dict(config), "lastUpdated": iso_now()}
        _atomic_write_json(self.global_path, payload)
        return payload

    def load_server(self, app_name: str) -> Optional[Dict[str, Any]]:
        return _load_json(self._server_path(app_name))

    def save_server(self, app_name: str, config: Mapping[str, Any]) -> Dict[str, Any]:
        payload = {**dict(config), "lastUpdated": iso_now()}
        _atomic_write_json(self._server_path(app_name), payload)
        return payload

    def list_servers(self) -> List[Dict[str, Any]]:
        if not self.servers_dir.exists():
            return []
        output: List[Dict[str, Any]] = []
        for path in sorted(self.servers_dir.glob("*.json")):
            payload = _load_json(path)
            if payload is not None:
                output.append(payload)
        return output

    def delete_server(self, app_name: str) -> bool:
        path = self._server_path(app_name)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _server_path(self, app_name: str) -> Path:
        normalized = str(app_name).strip()
        if not normalized or "/" in normalized or "\\" in normalized or normalized in {".", ".."}:
            raise ValueError(f"Invalid application name: {app_name!r}")
        return self.servers_dir / f"{normalized}.json"


def _known_fields(cls: type, raw: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    names = {item.name for item in fields(cls)}
    output: Dict[str, Any] = {}
    for key, value in (raw or {}).items():
        name = snake_case(str(key))
        if name in names and value is not None:
            output[name] = value
    return output


def snake_case(key: str) -> str:
    key = key.replace("IndexedDB", "IndexedDb")
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def _atomic_write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=True, sort_keys=True, indent=2) + "\n", encoding="utf-8")
    tmp_path.replace(path)
