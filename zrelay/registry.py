import threading
from typing import Any, Dict, Iterator, List, Optional

"""
registry.py — the set of Active sessions, keyed by session id.

This is the only state shared between connection tasks. Every method takes
the lock, touches the dict, and lets go again; nothing here awaits, so a slow
socket can never hold other sessions up.
"""


class SessionRegistry:
    """Insert on entering Active, remove on entering Closed, snapshot for fan-out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[int, Any] = {}

    def add(self, session: Any) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise KeyError(f"session {session.session_id} already registered")
            self._sessions[session.session_id] = session

    def remove(self, session_id: int) -> bool:
        """Drop a session; False if it wasn't there (already removed)."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def get(self, session_id: int) -> Optional[Any]:
        with self._lock:
            return self._sessions.get(session_id)

    def snapshot(self, exclude: Optional[int] = None) -> List[Any]:
        """Copy of the current members (minus `exclude`) in registration order."""
        with self._lock:
            return [s for sid, s in self._sessions.items() if sid != exclude]

    def ids(self) -> List[int]:
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.snapshot())
