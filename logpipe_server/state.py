from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import to_json_safe, utc_now_iso

NAMESPACES = ("cookies", "localStorage", "sessionStorage", "indexedDB")
SNAPSHOT_SUBTYPES = ("initial_state", "current_state")


def entry_key(entry: Mapping[str, Any]) -> Optional[str]:
    for field_name in ("name", "key"):
        raw = entry.get(field_name)
        if raw is not None and str(raw) != "":
            return str(raw)
    return None


class GlobalState:
    """Last-known mirror of every namespace reported by any session.

    Entries are never expired; a disconnect leaves them in place.
    """

    def __init__(self) -> None:
        self._namespaces: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in NAMESPACES}
        self._extras: Dict[str, Any] = {}

    def apply_update(self, subtype: str, data: Any, *, session_id: Optional[str] = None) -> int:
        """Merge one ``update`` payload and return the number of touched entries."""
        if subtype in SNAPSHOT_SUBTYPES:
            return self._apply_snapshot(data, session_id=session_id)
        if subtype == "indexedDB":
            info = dict(data) if isinstance(data, Mapping) else {"value": to_json_safe(data)}
            self._namespaces["indexedDB"]["info"] = self._stamp(info, session_id)
            return 1
        if subtype not in self._namespaces:
            self._extras[subtype] = {
                "data": to_json_safe(data),
                "lastUpdated": utc_now_iso(),
                "lastUpdatedBy": session_id,
            }
            return 1
        if not isinstance(data, Mapping):
            return 0

        bucket = self._namespaces[subtype]
        touched = 0
        for section in ("added", "modified"):
            touched += self._upsert(bucket, data.get(section), session_id)
        for entry in _entries(data.get("deleted")):
            key = entry_key(entry)
            if key is not None and bucket.pop(key, None) is not None:
                touched += 1
        return touched

    def clear(self, namespace: Optional[str] = None) -> List[str]:
        if namespace:
            if namespace in self._namespaces:
                self._namespaces[namespace].clear()
                return [namespace]
            if self._extras.pop(namespace, None) is not None:
                return [namespace]
            return []
        for bucket in self._namespaces.values():
            bucket.clear()
        self._extras.clear()
        return list(NAMESPACES)

    def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        entry = self._namespaces.get(namespace, {}).get(key)
        return dict(entry) if entry is not None else None

    def sizes(self) -> Dict[str, int]:
        return {name: len(bucket) for name, bucket in self._namespaces.items()}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {name: [dict(entry) for entry in bucket.values()] for name, bucket in self._namespaces.items()}
        if self._extras:
            payload["extras"] = {name: dict(value) for name, value in self._extras.items()}
        return payload

    def _apply_snapshot(self, data: Any, *, session_id: Optional[str]) -> int:
        if not isinstance(data, Mapping):
            return 0
        touched = 0
        for namespace, entries in data.items():
            if namespace == "indexedDB":
                if isinstance(entries, Mapping):
                    self._namespaces["indexedDB"]["info"] = self._stamp(dict(entries), session_id)
                    touched += 1
                continue
            bucket = self._namespaces.get(namespace)
            if bucket is not None:
                touched += self._upsert(bucket, entries, session_id)
        return touched

    def _upsert(self, bucket: Dict[str, Dict[str, Any]], entries: Any, session_id: Optional[str]) -> int:
        touched = 0
        for entry in _entries(entries):
            key = entry_key(entry)
            if key is None:
                continue
            record = {str(name): to_json_safe(value) for name, value in entry.items() if name != "oldValue"}
            bucket[key] = self._stamp(record, session_id)
            touched += 1
        return touched

    @staticmethod
    def _stamp(record: Dict[str, Any], session_id: Optional[str]) -> Dict[str, Any]:
        record["lastUpdated"] = utc_now_iso()
        record["lastUpdatedBy"] = session_id
        return record


def _entries(raw: Any) -> Iterable[Mapping[str, Any]]:
    if not isinstance(raw, (list, tuple)):
        return []
    return [item for item in raw if isinstance(item, Mapping)]
