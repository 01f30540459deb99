"""Snapshot diffing for tracked state namespaces (cookies, web storage, ...)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .types import iso_now, to_json_safe


@dataclass(frozen=True, slots=True)
class SnapshotEntry:
    key: str
    value: Any
    timestamp: Optional[str] = field(default_factory=iso_now)
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = {str(name): to_json_safe(raw) for name, raw in self.attributes.items()}
        payload["key"] = self.key
        payload["value"] = to_json_safe(self.value)
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        return payload


Snapshot = Mapping[str, Union[SnapshotEntry, Any]]


@dataclass(frozen=True, slots=True)
class Modification:
    entry: SnapshotEntry
    old_value: Any

    def to_dict(self) -> Dict[str, Any]:
        payload = self.entry.to_dict()
        payload["oldValue"] = to_json_safe(self.old_value)
        return payload


@dataclass(frozen=True, slots=True)
class ChangeSet:
    added: List[SnapshotEntry] = field(default_factory=list)
    modified: List[Modification] = field(default_factory=list)
    deleted: List[SnapshotEntry] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.deleted)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasChanges": self.has_changes,
            "added": [entry.to_dict() for entry in self.added],
            "modified": [change.to_dict() for change in self.modified],
            "deleted": [entry.to_dict() for entry in self.deleted],
        }


def diff(previous: Optional[Snapshot], current: Optional[Snapshot]) -> ChangeSet:
    """Compare two snapshots of one namespace by value.

    Timestamps never count as a change. Missing snapshots are treated as
    empty, so the function is total.
    """
    before = previous if isinstance(previous, Mapping) else {}
    after = current if isinstance(current, Mapping) else {}

    added: List[SnapshotEntry] = []
    modified: List[Modification] = []
    deleted: List[SnapshotEntry] = []

    for key, raw in after.items():
        entry = as_entry(key, raw)
        if key not in before:
            added.append(entry)
            continue
        old_value = value_of(before[key])
        if old_value != entry.value:
            modified.append(Modification(entry=entry, old_value=old_value))

    for key, raw in before.items():
        if key not in after:
            deleted.append(as_entry(key, raw))

    return ChangeSet(added=added, modified=modified, deleted=deleted)


def value_of(raw: Any) -> Any:
    if isinstance(raw, SnapshotEntry):
        return raw.value
    if isinstance(raw, Mapping) and "value" in raw:
        return raw["value"]
    return raw


def as_entry(key: str, raw: Any) -> SnapshotEntry:
    if isinstance(raw, SnapshotEntry):
        return raw
    if isinstance(raw, Mapping) and "value" in raw:
        timestamp = raw.get("timestamp")
        attributes = {
            str(name): item
            for name, item in raw.items()
            if name not in {"key", "value", "timestamp"}
        }
        return SnapshotEntry(
            key=str(key),
            value=raw["value"],
            timestamp=timestamp if isinstance(timestamp, str) else None,
            attributes=attributes,
        )
    return SnapshotEntry(key=str(key), value=raw, timestamp=None)


class SnapshotTracker:
    """Owns the previous snapshot of every tracked namespace."""

    def __init__(self) -> None:
        self._previous: Dict[str, Dict[str, Any]] = {}

    def seed(self, namespace: str, snapshot: Optional[Snapshot]) -> None:
        self._previous[namespace] = dict(snapshot or {})

    def previous(self, namespace: str) -> Dict[str, Any]:
        return dict(self._previous.get(namespace, {}))

    def check(self, namespace: str, current: Optional[Snapshot]) -> ChangeSet:
        replacement = dict(current or {})
        changes = diff(self._previous.get(namespace), replacement)
        self._previous[namespace] = replacement
        return changes

    def forget(self, namespace: Optional[str] = None) -> None:
        if namespace is None:
            self._previous.clear()
        else:
            self._previous.pop(namespace, None)
