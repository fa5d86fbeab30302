"""Anonymous session identity that outlives sign-in and sign-out."""

import time
from typing import Optional
from uuid import uuid4

import structlog

from ..domain.models import Session
from ..storage import SESSION_KEY, LocalStore

logger = structlog.get_logger()


def generate_session_id() -> str:
    """Time component plus a random suffix."""
    return f"session_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class SessionIdentityStore:
    """Owns the device's session id."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store
        self._session_id: Optional[str] = None

    def get_or_create(self) -> str:
        """Return the persisted session id, creating one on first use."""
        if self._session_id is not None:
            return self._session_id

        session_id = self._store.get(SESSION_KEY)
        if not session_id:
            session_id = generate_session_id()
            self._store.set(SESSION_KEY, session_id)
            logger.info("session_created", session_id=session_id)
        self._session_id = session_id
        return session_id

    def reset(self) -> str:
        """Replace the session id. Server-side history is left untouched."""
        previous = self._session_id
        session_id = generate_session_id()
        self._store.set(SESSION_KEY, session_id)
        self._session_id = session_id
        logger.info("session_reset", session_id=session_id, previous_session_id=previous)
        return session_id

    @property
    def session(self) -> Session:
        return Session(id=self.get_or_create())
