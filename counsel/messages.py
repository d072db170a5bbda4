import logging
import threading
from typing import Callable, Iterable, List, Optional, Set

from counsel.errors import PersistenceUnavailable, UnsupportedOperation
from counsel.models import MODEL, Message, now_ms
from counsel.repository import ChatRepository
from counsel.storage import Subscription

log = logging.getLogger(__name__)

WELCOME_ID = "welcome"
GUEST_WELCOME = (
    "Hello. I am KFM Counsel, your Christian marriage relationship companion. "
    "How can I be a support to you today?"
)
CLEARED_WELCOME = "Chat history cleared. How can I be a support to you today?"


def member_welcome(name: str) -> str:
    return f"Hello {name}. I am KFM Counsel. How can I be a support to you today?"


def _id_value(message_id: str) -> int:
    try:
        return int(message_id)
    except (TypeError, ValueError):
        return -1


def merge_messages(current: Iterable[Message], incoming: Iterable[Message]) -> List[Message]:
    """
    Union of two message lists keyed by id. On a shared id the incoming copy
    wins. Result is ordered by timestamp, then id.
    """
    by_id = {m.id: m for m in current}
    for message in incoming:
        by_id[message.id] = message
    return sorted(by_id.values(), key=lambda m: (m.timestamp, _id_value(m.id), m.id))


class MessageIdFactory:
    """
    Millisecond ids that strictly increase within a session, even when two
    are minted in the same millisecond or the clock steps backwards.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self.clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def observe(self, messages: Iterable[Message]) -> None:
        with self._lock:
            for message in messages:
                self._last = max(self._last, _id_value(message.id))

    def reset(self) -> None:
        with self._lock:
            self._last = 0

    def next(self) -> int:
        with self._lock:
            value = max(self.clock(), self._last + 1)
            self._last = value
            return value


class MessageStore:
    """
    Log of the active session as the user sees it.

    Appends show up immediately; persistence runs afterwards and a failed
    write only marks the message as unsynced. Pushes from the repository are
    merged by id, and pushes for a session that is no longer active are
    dropped.
    """

    def __init__(
        self,
        repository: ChatRepository,
        directory=None,
        welcome_text: str = GUEST_WELCOME,
        clock: Callable[[], int] = now_ms,
    ):
        self.repository = repository
        self.directory = directory
        self.welcome_text = welcome_text
        self.clock = clock
        self.ids = MessageIdFactory(clock)

        self.session_id: Optional[str] = None
        self.unsynced: Set[str] = set()
        self._log: List[Message] = []
        self._greeting = welcome_text
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._switch_listeners: List[Callable[[Optional[str]], None]] = []

        if directory is not None:
            directory.add_listener(self.activate)
            if directory.active_session_id is not None:
                self.activate(directory.active_session_id)

    def add_switch_listener(self, listener: Callable[[Optional[str]], None]) -> None:
        self._switch_listeners.append(listener)

    # -----------------------------
    # Activation & pushes
    # -----------------------------
    def activate(self, session_id: Optional[str]) -> None:
        if session_id == self.session_id and self._subscription is not None:
            return

        self._cancel()
        self._generation += 1
        self.session_id = session_id
        self._log = []
        self.unsynced = set()
        self._greeting = self.welcome_text
        self.ids.reset()

        for listener in self._switch_listeners:
            listener(session_id)

        if session_id is None:
            return

        generation = self._generation

        def on_push(messages: List[Message]) -> None:
            if generation != self._generation:
                log.debug("Ignoring stale push for session %s", session_id)
                return
            self._log = merge_messages(self._log, messages)
            self.ids.observe(self._log)

        try:
            self._subscription = self.repository.subscribe_messages(session_id, on_push)
        except PersistenceUnavailable:
            log.warning("Could not load messages for session %s", session_id, exc_info=True)

    def subscribe(self, session_id: Optional[str]) -> List[Message]:
        """Make `session_id` the active session and return its log."""
        self.activate(session_id)
        return self.messages

    def _cancel(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def close(self) -> None:
        self._cancel()
        self._generation += 1

    # -----------------------------
    # Reading
    # -----------------------------
    @property
    def log(self) -> List[Message]:
        """Stored and optimistic messages, without the synthetic greeting."""
        return list(self._log)

    @property
    def messages(self) -> List[Message]:
        if self._log:
            return list(self._log)
        return [self.welcome_message()]

    def welcome_message(self) -> Message:
        return Message(id=WELCOME_ID, role=MODEL, text=self._greeting, timestamp=self.clock())

    # -----------------------------
    # Writing
    # -----------------------------
    def new_message(self, role: str, text: str, is_safety_warning: Optional[bool] = None) -> Message:
        value = self.ids.next()
        return Message(
            id=str(value),
            role=role,
            text=text,
            timestamp=value,
            is_safety_warning=is_safety_warning,
        )

    def append(self, message: Message) -> bool:
        """
        Show `message` right away, then persist it. Returns False when the
        write failed; the message stays visible and is listed in `unsynced`.
        """
        if self.session_id is None:
            raise ValueError("No active session")

        session_id = self.session_id
        self._log = merge_messages(self._log, [message])
        self.ids.observe([message])

        try:
            self.repository.append_message(session_id, message)
        except PersistenceUnavailable:
            self.unsynced.add(message.id)
            log.warning(
                "Message %s kept unsynced in session %s", message.id, session_id, exc_info=True
            )
            return False

        if self.directory is not None:
            self.directory.refresh()
        return True

    def clear_history(self) -> bool:
        """
        Drop the active session's messages where the scope allows it.
        Returns False when the scope does not support clearing.
        """
        if self.session_id is None:
            return False
        try:
            self.repository.clear_history(self.session_id)
        except UnsupportedOperation:
            log.info("History clear not available for session %s", self.session_id)
            return False
        except PersistenceUnavailable:
            log.warning("Could not clear session %s", self.session_id, exc_info=True)
            return False

        self._log = []
        self.unsynced = set()
        self._greeting = CLEARED_WELCOME
        for listener in self._switch_listeners:
            listener(self.session_id)
        if self.directory is not None:
            self.directory.refresh()
        return True
