import logging
from typing import Callable, List, Optional

from counsel.errors import PersistenceUnavailable
from counsel.models import ChatSession
from counsel.repository import ChatRepository, sort_sessions
from counsel.storage import Subscription

log = logging.getLogger(__name__)


class SessionDirectory:
    """
    Session list for one scope plus the active selection.

    The first `list()` subscribes to the repository. Live repositories push
    a new list after every change; local ones are re-read via `refresh()`.
    """

    def __init__(self, repository: ChatRepository):
        self.repository = repository
        self.sessions: List[ChatSession] = []
        self.active_session_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None
        self._loaded = False
        self._bootstrapped = False
        self._listeners: List[Callable[[Optional[str]], None]] = []

    def add_listener(self, listener: Callable[[Optional[str]], None]) -> None:
        """`listener(session_id)` runs whenever the active session changes."""
        self._listeners.append(listener)

    def _set_active(self, session_id: Optional[str]) -> None:
        if session_id == self.active_session_id:
            return
        self.active_session_id = session_id
        for listener in self._listeners:
            listener(session_id)

    def _apply(self, sessions: List[ChatSession]) -> None:
        self.sessions = sort_sessions(sessions)

        if not self.sessions and not self._bootstrapped:
            # First load of an empty scope: provision exactly one session.
            self._bootstrapped = True
            self.create()
            return
        self._bootstrapped = True

        ids = {s.id for s in self.sessions}
        if self.active_session_id not in ids:
            self._set_active(self.sessions[0].id if self.sessions else None)

    # -----------------------------
    # Operations
    # -----------------------------
    def load(self) -> List[ChatSession]:
        if self._loaded:
            return self.list()
        self._loaded = True
        try:
            self._subscription = self.repository.subscribe_sessions(self._apply)
        except PersistenceUnavailable:
            self._loaded = False
            log.warning("Session list unavailable", exc_info=True)
        return list(self.sessions)

    def list(self) -> List[ChatSession]:
        """Sessions, most recently updated first."""
        if not self._loaded:
            return self.load()
        return list(self.sessions)

    def refresh(self) -> None:
        """Re-read a non-live repository; live ones update themselves."""
        if self.repository.live or not self._loaded:
            return
        try:
            self._apply(self.repository.list_sessions())
        except PersistenceUnavailable:
            log.warning("Could not refresh session list", exc_info=True)

    def create(self) -> Optional[str]:
        """New session id, or None when storage refused the write."""
        try:
            session_id = self.repository.create_session()
            if not self.repository.live:
                self._apply(self.repository.list_sessions())
        except PersistenceUnavailable:
            log.warning("Could not create session", exc_info=True)
            return None
        if self.active_session_id is None:
            self._set_active(session_id)
        return session_id

    def select(self, session_id: Optional[str]) -> None:
        if session_id is not None and session_id not in {s.id for s in self.sessions}:
            raise KeyError(session_id)
        self._set_active(session_id)

    def remove(self, session_id: str) -> bool:
        try:
            self.repository.remove_session(session_id)
        except PersistenceUnavailable:
            log.warning("Could not remove session %s", session_id, exc_info=True)
            return False

        remaining = [s for s in self.sessions if s.id != session_id]
        self.sessions = remaining
        if self.active_session_id == session_id:
            self._set_active(remaining[0].id if remaining else None)
        return True

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._loaded = False
