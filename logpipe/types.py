from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

_SESSION_ALPHABET = string.ascii_lowercase + string.digits


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def epoch_ms() -> int:
    return int(time.time() * 1000)


def to_json_safe(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value

    if isinstance(value, Mapping):
        return {str(key): to_json_safe(raw) for key, raw in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]

    if isinstance(value, Enum):
        return to_json_safe(value.value)

    if hasattr(value, "to_dict") and callable(value.to_dict):
        try:
            return to_json_safe(value.to_dict())
        except Exception:
            return str(value)

    return str(value)


class TelemetryKind(str, Enum):
    LOG = "log"
    ERROR = "error"
    NETWORK = "network"
    STORAGE = "storage"


@dataclass(frozen=True, slots=True)
class TelemetryItem:
    """One captured event, immutable once created."""

    kind: TelemetryKind
    payload: Any = field(default_factory=dict)
    captured_at: str = field(default_factory=iso_now)
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "timestamp": self.captured_at,
            "correlationId": self.correlation_id,
            "payload": to_json_safe(self.payload),
        }


def generate_session_id(prefix: str = "clp") -> str:
    suffix = "".join(secrets.choice(_SESSION_ALPHABET) for _ in range(9))
    return f"{prefix}_{epoch_ms()}_{suffix}"


def application_port(application_name: Optional[str], *, base: int = 3001, span: int = 100) -> int:
    """Map an application name onto a stable port in [base, base + span)."""
    if not application_name:
        return base

    value = 0
    for char in application_name:
        value = _to_int32((_to_int32(value << 5) - value) + ord(char))
    return base + (abs(value) % span)


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value
