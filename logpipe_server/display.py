from __future__ import annotations

import json
import logging
from typing import Any, List, Mapping, Optional

from .state import entry_key

logger = logging.getLogger("logpipe_server.display")

MAX_VALUE_LENGTH = 100


def truncate_value(value: Any, max_length: int = MAX_VALUE_LENGTH) -> str:
    if not isinstance(value, str):
        try:
            value = json.dumps(value, default=str)
        except (TypeError, ValueError):
            value = str(value)
    return value if len(value) <= max_length else f"{value[:max_length]}..."


def format_update(subtype: str, data: Any, session_id: Optional[str]) -> List[str]:
    """Console lines for one storage update: ``+`` added, ``~`` modified, ``-`` deleted."""
    session_short = (session_id or "unknown").split("_")[-1][:8]
    lines = [f"[{session_short}] {subtype}"]
    if not isinstance(data, Mapping):
        return lines

    for item in _items(data.get("added")):
        lines.append(f"  + {subtype}: {entry_key(item)} = {truncate_value(item.get('value'))}")
    for item in _items(data.get("modified")):
        lines.append(f"  ~ {subtype}: {entry_key(item)}")
        lines.append(f"    - {truncate_value(item.get('oldValue'))}")
        lines.append(f"    + {truncate_value(item.get('value'))}")
    for item in _items(data.get("deleted")):
        lines.append(f"  - {subtype}: {entry_key(item)}")
    return lines


def display_update(subtype: str, data: Any, session_id: Optional[str]) -> None:
    for line in format_update(subtype, data, session_id):
        logger.info("%s", line)


def _items(raw: Any) -> List[Mapping[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, Mapping)]
