import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from counsel.errors import PersistenceUnavailable, UnsupportedOperation
from counsel.models import (
    ChatSession,
    DEFAULT_TITLE,
    Identity,
    Message,
    PREVIEW_LENGTH,
    TITLE_LENGTH,
    USER,
    UserProfile,
    now_ms,
    truncate,
)
from counsel.storage import DocumentStore, SQLKeyValueStore, Subscription

log = logging.getLogger(__name__)

LOCAL_PREFIX = "kfm_"
GUEST_SCOPE = "guest"

SessionsCallback = Callable[[List[ChatSession]], None]
MessagesCallback = Callable[[List[Message]], None]


def rollup_updates(session: ChatSession, message: Message, now: Optional[int] = None) -> Dict:
    """
    Metadata changes a session picks up when `message` is appended.
    """
    now = now_ms() if now is None else now
    updates = {
        "updated_at": max(now, session.updated_at),
        "message_count": session.message_count + 1,
    }

    if message.role == USER:
        if not session.preview:
            updates["preview"] = truncate(message.text, PREVIEW_LENGTH)
        if session.title == DEFAULT_TITLE:
            updates["title"] = truncate(message.text, TITLE_LENGTH)

    return updates


def new_session_id(existing, now: Optional[int] = None) -> str:
    """`session_{ms}`, moved forward past any id already in the scope."""
    stamp = now_ms() if now is None else now
    taken = set(existing)
    while f"session_{stamp}" in taken:
        stamp += 1
    return f"session_{stamp}"


def sort_sessions(sessions: List[ChatSession]) -> List[ChatSession]:
    """Most recently updated first."""
    return sorted(sessions, key=lambda s: (s.updated_at, s.id), reverse=True)


class ChatRepository(ABC):
    """
    Storage capability shared by both scopes. `live` repositories push
    changes to subscribers; the others deliver a single snapshot.
    """

    live = False

    @abstractmethod
    def list_sessions(self) -> List[ChatSession]: ...

    @abstractmethod
    def subscribe_sessions(self, callback: SessionsCallback) -> Subscription: ...

    @abstractmethod
    def create_session(self, title: str = DEFAULT_TITLE) -> str: ...

    @abstractmethod
    def remove_session(self, session_id: str) -> None: ...

    @abstractmethod
    def load_messages(self, session_id: str) -> List[Message]: ...

    @abstractmethod
    def subscribe_messages(self, session_id: str, callback: MessagesCallback) -> Subscription: ...

    @abstractmethod
    def append_message(self, session_id: str, message: Message) -> None:
        """Write `message`, then apply the session rollup on a best-effort basis."""

    @abstractmethod
    def clear_history(self, session_id: str) -> None: ...

    @abstractmethod
    def load_profile(self) -> Optional[UserProfile]: ...

    @abstractmethod
    def save_profile(self, profile: UserProfile) -> None: ...


# ============================================================
# Identity-absent scope
# ============================================================
class LocalRepository(ChatRepository):

    def __init__(self, kv: SQLKeyValueStore, scope: str = GUEST_SCOPE):
        self.kv = kv
        self.scope = scope

    @property
    def sessions_key(self) -> str:
        return f"{LOCAL_PREFIX}sessions_{self.scope}"

    @property
    def profile_key(self) -> str:
        return f"{LOCAL_PREFIX}profile_{self.scope}"

    def messages_key(self, session_id: str) -> str:
        return f"{LOCAL_PREFIX}chat_{self.scope}_{session_id}"

    def _write_sessions(self, sessions: List[ChatSession]) -> None:
        self.kv.set(self.sessions_key, [s.model_dump() for s in sessions])

    def _read_records(self, key: str, model):
        raw = self.kv.get(key, default=[]) or []
        if not isinstance(raw, list):
            log.warning("Ignoring malformed local list under %s", key)
            return []
        records = []
        for item in raw:
            try:
                records.append(model.model_validate(item))
            except ValidationError:
                log.warning("Skipping malformed %s under %s", model.__name__, key, exc_info=True)
        return records

    def list_sessions(self) -> List[ChatSession]:
        return sort_sessions(self._read_records(self.sessions_key, ChatSession))

    def subscribe_sessions(self, callback: SessionsCallback) -> Subscription:
        callback(self.list_sessions())
        return Subscription()

    def create_session(self, title: str = DEFAULT_TITLE) -> str:
        sessions = self.list_sessions()
        now = now_ms()
        session_id = new_session_id((s.id for s in sessions), now)
        session = ChatSession(
            id=session_id,
            title=title,
            preview="",
            created_at=now,
            updated_at=now,
            message_count=0,
        )
        self._write_sessions([session] + sessions)
        log.info("Created local session %s", session_id)
        return session_id

    def remove_session(self, session_id: str) -> None:
        sessions = [s for s in self.list_sessions() if s.id != session_id]
        self._write_sessions(sessions)
        self.kv.delete(self.messages_key(session_id))
        log.info("Removed local session %s", session_id)

    def load_messages(self, session_id: str) -> List[Message]:
        messages = self._read_records(self.messages_key(session_id), Message)
        return sorted(messages, key=lambda m: m.timestamp)

    def subscribe_messages(self, session_id: str, callback: MessagesCallback) -> Subscription:
        # Loaded once per activation; nothing pushes to the local scope.
        callback(self.load_messages(session_id))
        return Subscription()

    def append_message(self, session_id: str, message: Message) -> None:
        messages = [m for m in self.load_messages(session_id) if m.id != message.id]
        messages.append(message)
        self.kv.set(self.messages_key(session_id), [m.model_dump() for m in messages])

        try:
            sessions = self.list_sessions()
            for i, session in enumerate(sessions):
                if session.id == session_id:
                    sessions[i] = session.model_copy(update=rollup_updates(session, message))
                    self._write_sessions(sessions)
                    break
            else:
                log.warning("Rollup skipped: local session %s not found", session_id)
        except PersistenceUnavailable:
            log.warning("Rollup failed for local session %s", session_id, exc_info=True)

    def clear_history(self, session_id: str) -> None:
        self.kv.delete(self.messages_key(session_id))
        sessions = self.list_sessions()
        for i, session in enumerate(sessions):
            if session.id == session_id:
                sessions[i] = session.model_copy(
                    update={"message_count": 0, "updated_at": max(now_ms(), session.updated_at)}
                )
        self._write_sessions(sessions)

    def load_profile(self) -> Optional[UserProfile]:
        raw = self.kv.get(self.profile_key)
        return UserProfile.model_validate(raw) if raw else None

    def save_profile(self, profile: UserProfile) -> None:
        self.kv.set(self.profile_key, profile.model_dump())


# ============================================================
# Identity-present scope
# ============================================================
class RemoteRepository(ChatRepository):

    live = True

    def __init__(self, docs: Optional[DocumentStore], identity_id: str):
        self._docs = docs
        self.identity_id = identity_id

    @property
    def docs(self) -> DocumentStore:
        if self._docs is None:
            raise PersistenceUnavailable("Remote document store is not configured")
        return self._docs

    @property
    def user_path(self) -> str:
        return f"users/{self.identity_id}"

    @property
    def sessions_path(self) -> str:
        return f"{self.user_path}/sessions"

    def session_path(self, session_id: str) -> str:
        return f"{self.sessions_path}/{session_id}"

    def messages_path(self, session_id: str) -> str:
        return f"{self.session_path(session_id)}/messages"

    @staticmethod
    def _sessions(snapshot) -> List[ChatSession]:
        return [ChatSession.model_validate({**doc, "id": doc_id}) for doc_id, doc in snapshot]

    @staticmethod
    def _messages(snapshot) -> List[Message]:
        return [Message.model_validate({**doc, "id": doc_id}) for doc_id, doc in snapshot]

    def list_sessions(self) -> List[ChatSession]:
        return self._sessions(self.docs.list(self.sessions_path, order_by="updated_at", descending=True))

    def subscribe_sessions(self, callback: SessionsCallback) -> Subscription:
        return self.docs.subscribe(
            self.sessions_path,
            lambda snapshot: callback(self._sessions(snapshot)),
            order_by="updated_at",
            descending=True,
        )

    def create_session(self, title: str = DEFAULT_TITLE) -> str:
        existing = [doc_id for doc_id, _ in self.docs.list(self.sessions_path)]
        now = now_ms()
        session_id = new_session_id(existing, now)
        session = ChatSession(
            id=session_id,
            title=title,
            preview="",
            created_at=now,
            updated_at=now,
            message_count=0,
        )
        self.docs.set(self.session_path(session_id), session.model_dump())
        log.info("Created session %s for %s", session_id, self.identity_id)
        return session_id

    def remove_session(self, session_id: str) -> None:
        messages_path = self.messages_path(session_id)
        for message_id, _ in self.docs.list(messages_path):
            self.docs.delete(f"{messages_path}/{message_id}")
        self.docs.delete(self.session_path(session_id))
        log.info("Removed session %s for %s", session_id, self.identity_id)

    def load_messages(self, session_id: str) -> List[Message]:
        return self._messages(self.docs.list(self.messages_path(session_id), order_by="timestamp"))

    def subscribe_messages(self, session_id: str, callback: MessagesCallback) -> Subscription:
        return self.docs.subscribe(
            self.messages_path(session_id),
            lambda snapshot: callback(self._messages(snapshot)),
            order_by="timestamp",
        )

    def append_message(self, session_id: str, message: Message) -> None:
        self.docs.set(f"{self.messages_path(session_id)}/{message.id}", message.model_dump())

        # Read-modify-write without a transaction: message_count is best effort.
        try:
            raw = self.docs.get(self.session_path(session_id))
            if raw is None:
                log.warning("Rollup skipped: session %s not found", session_id)
                return
            session = ChatSession.model_validate({**raw, "id": session_id})
            self.docs.set(
                self.session_path(session_id),
                rollup_updates(session, message),
                merge=True,
            )
        except PersistenceUnavailable:
            log.warning("Rollup failed for session %s", session_id, exc_info=True)

    def clear_history(self, session_id: str) -> None:
        raise UnsupportedOperation("Cloud history is cleared by deleting the conversation")

    def load_profile(self) -> Optional[UserProfile]:
        raw = self.docs.get(self.user_path)
        if not raw:
            return None
        return UserProfile.model_validate(raw)

    def save_profile(self, profile: UserProfile) -> None:
        self.docs.set(self.user_path, {**profile.model_dump(), "updated_at": now_ms()}, merge=True)


def build_repository(
    identity: Optional[Identity],
    kv: SQLKeyValueStore,
    docs: Optional[DocumentStore] = None,
) -> ChatRepository:
    """Pick the storage scope for `identity`; the only identity branch in the core."""
    if identity is None:
        return LocalRepository(kv)
    return RemoteRepository(docs, identity.id)
