"""In-memory session store."""

from cuid2 import cuid_wrapper

from deepsearch.models.session import Session
from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


class InMemorySessionManager:
    """Keeps research sessions in process memory.

    Sessions do not expire. They are created on first connection (or through
    the REST API) and destroyed only when their history is cleared.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}

    def get_or_create_session(self, session_id: str | None = None) -> Session:
        """Return the session with this id, creating it (with a fresh id if none is given)."""
        session = self.sessions.get(session_id) if session_id else None
        if session is not None:
            session.update_activity()
            return session

        session = Session(session_id=session_id or cuid())
        self.sessions[session.session_id] = session
        logger.info(f"Created session {session.session_id}")
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        """Forget a session; returns False if it did not exist."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        logger.info(f"Deleted session {session_id} ({len(session.messages)} messages)")
        return True

    def reset_session(self, session_id: str) -> Session:
        """Replace a session's state with an empty session under the same id.

        Live connection counts carry over so connectivity stays accurate.
        """
        previous = self.sessions.pop(session_id, None)
        session = Session(session_id=session_id, connections=previous.connections if previous else 0)
        self.sessions[session_id] = session
        logger.info(f"Reset session {session_id}")
        return session

    def get_session_count(self) -> int:
        return len(self.sessions)

    def get_connected_session_count(self) -> int:
        """Number of sessions with at least one live connection."""
        return sum(1 for session in self.sessions.values() if session.connectivity == "connected")


session_manager = InMemorySessionManager()
