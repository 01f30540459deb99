from __future__ import annotations

import json
import logging
import re
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional

from .broadcast import Broadcaster
from .models import CHANNEL_LOGS, StreamEnvelope, to_json_safe, utc_now_iso

logger = logging.getLogger(__name__)

_KIND_COUNTERS = {
    "log": "total_logs",
    "error": "total_errors",
    "network": "total_network_requests",
}


class LogCollector:
    """Bounded in-memory buffer of telemetry items received over HTTP."""

    def __init__(self, *, max_logs: int = 1000, broadcaster: Optional[Broadcaster] = None) -> None:
        self.max_logs = max(1, int(max_logs))
        self.broadcaster = broadcaster
        self._items: Deque[Dict[str, Any]] = deque(maxlen=self.max_logs)
        self.counters: Dict[str, int] = {name: 0 for name in _KIND_COUNTERS.values()}
        self.total_received = 0
        self.last_activity: Optional[str] = None

    def __len__(self) -> int:
        return len(self._items)

    def ingest(
        self,
        items: Iterable[Mapping[str, Any]],
        *,
        session_id: Optional[str] = None,
        application_name: Optional[str] = None,
    ) -> int:
        received = 0
        for raw in items:
            if not isinstance(raw, Mapping):
                continue
            record = to_json_safe(raw)
            record["receivedAt"] = utc_now_iso()
            record["sessionId"] = session_id
            record["applicationName"] = application_name
            self._items.append(record)
            received += 1

            counter = _KIND_COUNTERS.get(str(record.get("type", "log")))
            if counter is not None:
                self.counters[counter] += 1
            if self.broadcaster is not None:
                self.broadcaster.publish(
                    StreamEnvelope.build(
                        channel=CHANNEL_LOGS,
                        source=application_name or "unknown",
                        timestamp=record.get("timestamp"),
                        data=record,
                    )
                )

        if received:
            self.total_received += received
            self.last_activity = utc_now_iso()
            logger.debug("ingested %d items app=%s session=%s", received, application_name, session_id)
        return received

    def query(
        self,
        *,
        since: Optional[str] = None,
        tail: Optional[int] = None,
        level: Optional[str] = None,
        pattern: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Filter buffered items. Raises ``ValueError`` for an unparsable ``since`` or ``pattern``."""
        selected = list(self._items)

        if since:
            threshold = _parse_time(since)
            if threshold is None:
                raise ValueError(f"invalid since value: {since}")
            selected = [
                item
                for item in selected
                if (_parse_time(item.get("timestamp")) or _parse_time(item.get("receivedAt")) or threshold) >= threshold
            ]

        if level:
            wanted = level.lower()
            selected = [item for item in selected if _level_of(item) == wanted]

        if pattern:
            try:
                regex = re.compile(pattern, re.IGNORECASE)
            except re.error as exc:
                raise ValueError(f"invalid pattern: {exc}") from exc
            selected = [item for item in selected if regex.search(json.dumps(item, default=str))]

        if tail is not None and tail >= 0:
            selected = selected[-tail:] if tail else []
        return selected

    def clear(self) -> None:
        self._items.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "totalLogs": self.counters["total_logs"],
            "totalErrors": self.counters["total_errors"],
            "totalNetworkRequests": self.counters["total_network_requests"],
            "totalReceived": self.total_received,
            "buffered": len(self._items),
            "maxLogs": self.max_logs,
            "lastActivity": self.last_activity,
        }


def _level_of(item: Mapping[str, Any]) -> Optional[str]:
    raw = item.get("level")
    if raw is None:
        payload = item.get("payload")
        raw = payload.get("level") if isinstance(payload, Mapping) else None
    return str(raw).lower() if raw is not None else None


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch_ms(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.isdigit():
        return _from_epoch_ms(int(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _from_epoch_ms(value: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
