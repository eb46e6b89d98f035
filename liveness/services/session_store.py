"""
Session store for the QR-handoff liveness flow.

The desktop page creates a session and shows its id as a QR code; the mobile
capture page runs the check and reports the result under that id; the desktop
page polls for it. Entries live in memory and expire after a TTL.
"""
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from ..config import config

logger = logging.getLogger(__name__)


@dataclass
class StoredSession:
    """Reported state of a liveness session"""
    session_id: str
    completed: bool = False
    passed: bool = False
    score: int = 0
    completed_challenges: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_status(self) -> dict:
        return {
            "found": True,
            "completed": self.completed,
            "passed": self.passed,
            "score": self.score,
            "completedChallenges": self.completed_challenges,
        }


NOT_FOUND_STATUS = {
    "found": False,
    "completed": False,
    "passed": False,
    "score": 0,
    "completedChallenges": 0,
}


class SessionStore:
    """Thread-safe in-memory store of liveness sessions"""

    def __init__(self, ttl_seconds: int = config.SESSION_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, StoredSession] = {}
        self._lock = threading.Lock()

    @staticmethod
    def generate_session_id() -> str:
        """Opaque, unguessable id suitable for a QR code"""
        return secrets.token_urlsafe(16)

    def create(self) -> StoredSession:
        now = self._clock()
        session = StoredSession(session_id=self.generate_session_id(), created_at=now, updated_at=now)
        with self._lock:
            self._purge_expired(now)
            self._sessions[session.session_id] = session
        logger.info(f"Liveness session {session.session_id} created")
        return session

    def record_result(
        self,
        session_id: str,
        completed: bool,
        passed: bool,
        score: int,
        completed_challenges: int
    ) -> StoredSession:
        """Store a reported result, creating the entry if it is unknown."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = StoredSession(session_id=session_id, created_at=now)
                self._sessions[session_id] = session
            session.completed = completed
            session.passed = passed
            session.score = score
            session.completed_challenges = completed_challenges
            session.updated_at = now
        logger.info(
            f"Liveness session {session_id} updated: completed={completed} passed={passed} score={score}"
        )
        return session

    def get(self, session_id: str) -> Optional[StoredSession]:
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and self._expired(session, now):
                del self._sessions[session_id]
                return None
            return session

    def status(self, session_id: str) -> dict:
        session = self.get(session_id)
        if session is None:
            return dict(NOT_FOUND_STATUS)
        return session.to_status()

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired(self._clock())

    def _expired(self, session: StoredSession, now: float) -> bool:
        return now - session.updated_at > self.ttl_seconds

    def _purge_expired(self, now: float) -> int:
        expired = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
