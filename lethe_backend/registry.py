import threading
from typing import Dict, List, Optional

from .errors import ConflictError, NotFoundError
from .models import Session


class SessionRegistry:
    """Process-wide session store.

    Sessions are replaced copy-on-write under a lock, so a reader always sees
    a whole session and concurrent updates to different fields don't get lost.
    Sessions are never removed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def create(self, session: Session) -> Session:
        with self._lock:
            if session.id in self._sessions:
                raise ConflictError(f"Session {session.id} already exists")
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        s = self.get(session_id)
        if s is None:
            raise NotFoundError("Session not found", details={"sessionId": session_id})
        return s

    def update(self, session_id: str, **fields) -> Session:
        with self._lock:
            cur = self._sessions.get(session_id)
            if cur is None:
                raise NotFoundError("Session not found", details={"sessionId": session_id})
            new = cur.model_copy(update=fields)
            self._sessions[session_id] = new
            return new

    def all(self) -> List[Session]:
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.started_at)

    def __len__(self):
        with self._lock:
            return len(self._sessions)
