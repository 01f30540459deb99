"""State sources the storage monitor can snapshot and observe."""

from __future__ import annotations

import logging
from http.cookiejar import CookieJar
from typing import Any, Callable, Dict, List, Optional, Protocol

from .changes import SnapshotEntry
from .types import iso_now

logger = logging.getLogger(__name__)

MutationListener = Callable[[str, tuple], None]


class StorageSource(Protocol):
    def snapshot(self) -> Dict[str, SnapshotEntry]:
        ...

    def clear(self) -> None:
        ...


class MemoryStorage:
    """Key/value store with the web-storage surface and mutation hooks.

    Listeners fire synchronously after each ``set_item``, ``remove_item`` or
    ``clear`` with the operation name and its arguments.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = {str(key): str(value) for key, value in (initial or {}).items()}
        self._listeners: List[MutationListener] = []

    def __len__(self) -> int:
        return len(self._items)

    def key(self, index: int) -> Optional[str]:
        keys = list(self._items)
        if 0 <= index < len(keys):
            return keys[index]
        return None

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(str(key))

    def set_item(self, key: str, value: Any) -> None:
        self._items[str(key)] = str(value)
        self._notify("setItem", (str(key), str(value)))

    def remove_item(self, key: str) -> None:
        self._items.pop(str(key), None)
        self._notify("removeItem", (str(key),))

    def clear(self) -> None:
        self._items.clear()
        self._notify("clear", ())

    def snapshot(self) -> Dict[str, SnapshotEntry]:
        now = iso_now()
        return {key: SnapshotEntry(key=key, value=value, timestamp=now) for key, value in self._items.items()}

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: MutationListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, operation: str, args: tuple) -> None:
        for listener in list(self._listeners):
            try:
                listener(operation, args)
            except Exception:
                logger.exception("storage listener failed operation=%s", operation)


class CookieJarSource:
    """Snapshots an ``http.cookiejar.CookieJar`` keyed by cookie name."""

    def __init__(self, jar: CookieJar) -> None:
        self.jar = jar

    def snapshot(self) -> Dict[str, SnapshotEntry]:
        now = iso_now()
        output: Dict[str, SnapshotEntry] = {}
        for cookie in self.jar:
            output[cookie.name] = SnapshotEntry(
                key=cookie.name,
                value=cookie.value or "",
                timestamp=now,
                attributes={"name": cookie.name, "domain": cookie.domain, "path": cookie.path},
            )
        return output

    def clear(self) -> None:
        self.jar.clear()


class IndexedDBInfoSource:
    """Reports database availability only; contents are not tracked."""

    def __init__(self, databases: Optional[List[str]] = None, available: bool = True) -> None:
        self.databases = list(databases or [])
        self.available = available

    def info(self) -> Dict[str, Any]:
        return {"available": self.available, "databases": list(self.databases), "timestamp": iso_now()}

    def snapshot(self) -> Dict[str, SnapshotEntry]:
        return {}

    def clear(self) -> None:
        self.databases = []
