from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import utc_now_iso


@dataclass(slots=True)
class Session:
    session_id: str
    connection: Any
    config: Dict[str, Any] = field(default_factory=dict)
    connected_at: str = field(default_factory=utc_now_iso)
    last_activity_at: str = field(default_factory=utc_now_iso)
    updates: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "connectionId": getattr(self.connection, "connection_id", None),
            "config": dict(self.config),
            "connectedAt": self.connected_at,
            "lastActivityAt": self.last_activity_at,
            "updates": self.updates,
        }


class SessionRegistry:
    """One session per id, last registration wins."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def register(self, session_id: str, connection: Any, config: Optional[Dict[str, Any]] = None) -> Session:
        # A connection carries at most one session; re-registering under a new id drops the old one.
        for existing_id, existing in list(self._sessions.items()):
            if existing.connection is connection and existing_id != session_id:
                del self._sessions[existing_id]
        session = Session(session_id=session_id, connection=connection, config=dict(config or {}))
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def touch(self, session_id: Optional[str]) -> Optional[Session]:
        session = self._sessions.get(session_id) if session_id else None
        if session is not None:
            session.last_activity_at = utc_now_iso()
            session.updates += 1
        return session

    def session_for(self, connection: Any) -> Optional[Session]:
        for session in self._sessions.values():
            if session.connection is connection:
                return session
        return None

    def remove_connection(self, connection: Any) -> List[str]:
        """Drop sessions still bound to ``connection``; superseded ids are left alone."""
        removed = [session_id for session_id, session in self._sessions.items() if session.connection is connection]
        for session_id in removed:
            del self._sessions[session_id]
        return removed

    def list(self) -> List[Session]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()
