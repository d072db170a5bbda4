import enum
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Set

from counsel import safety
from counsel.context import compose
from counsel.errors import ModelCallFailed, PersistenceUnavailable
from counsel.formatting import clean_text
from counsel.messages import MessageStore
from counsel.models import MODEL, USER, Message

log = logging.getLogger(__name__)


class LanguageModel(Protocol):
    def send(self, text: str, user_id: Optional[str] = None, session_id: Optional[str] = None) -> str: ...


class TurnState(enum.Enum):
    IDLE = "idle"
    AWAITING_MODEL_REPLY = "awaiting_model_reply"
    SAFETY_TRIPPED = "safety_tripped"


@dataclass
class TurnOutcome:
    state: TurnState
    user_message: Optional[Message] = None
    reply: Optional[Message] = None
    error: Optional[str] = None
    rejected: bool = False

    @property
    def tripped(self) -> bool:
        return self.state is TurnState.SAFETY_TRIPPED


class ConversationOrchestrator:
    """
    Runs one turn at a time per session:

        IDLE -> AWAITING_MODEL_REPLY -> IDLE
        (either) -> SAFETY_TRIPPED

    Both the user's text and the model's reply pass through the safety
    interceptor. A tripped reply is never appended.
    """

    def __init__(
        self,
        store: MessageStore,
        model: LanguageModel,
        on_safety_trip: Optional[Callable[[], None]] = None,
        user_id: Optional[str] = None,
    ):
        self.store = store
        self.model = model
        self.on_safety_trip = on_safety_trip
        self.user_id = user_id

        self.state = TurnState.IDLE
        self.speaking_id: Optional[str] = None
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

        store.add_switch_listener(lambda _session_id: self.stop_speech())

    @property
    def busy(self) -> bool:
        """True while the active session waits on the model; the send control is disabled."""
        return self.store.session_id in self._in_flight

    # -----------------------------
    # Safety
    # -----------------------------
    def _trip(self) -> None:
        self.state = TurnState.SAFETY_TRIPPED
        self.stop_speech()
        if self.on_safety_trip:
            self.on_safety_trip()

    def dismiss_safety(self) -> None:
        if self.state is TurnState.SAFETY_TRIPPED:
            self.state = TurnState.IDLE

    # -----------------------------
    # Turn
    # -----------------------------
    def _load_profile(self):
        try:
            return self.store.repository.load_profile()
        except PersistenceUnavailable:
            log.warning("Profile unavailable; sending without context", exc_info=True)
            return None

    def submit(self, text: str) -> TurnOutcome:
        text = (text or "").strip()
        session_id = self.store.session_id
        if not text or session_id is None:
            return TurnOutcome(state=self.state, rejected=True)

        with self._lock:
            if session_id in self._in_flight:
                log.info("Ignoring submission while session %s awaits a reply", session_id)
                return TurnOutcome(state=self.state, rejected=True)
            self._in_flight.add(session_id)

        try:
            return self._run_turn(session_id, text)
        finally:
            with self._lock:
                self._in_flight.discard(session_id)
            if self.state is TurnState.AWAITING_MODEL_REPLY:
                self.state = TurnState.IDLE

    def _run_turn(self, session_id: str, text: str) -> TurnOutcome:
        tripped = safety.scan(text)
        user_message = self.store.new_message(USER, text, is_safety_warning=True if tripped else None)
        self.store.append(user_message)

        if tripped:
            self._trip()
            return TurnOutcome(state=self.state, user_message=user_message)

        self.state = TurnState.AWAITING_MODEL_REPLY
        prompt = compose(text, self._load_profile())

        try:
            reply_text = self.model.send(prompt, user_id=self.user_id, session_id=session_id)
        except ModelCallFailed as e:
            log.warning("Model call failed for session %s: %s", session_id, e)
            self.state = TurnState.IDLE
            return TurnOutcome(state=self.state, user_message=user_message, error=str(e))

        if safety.scan(reply_text):
            self._trip()
            return TurnOutcome(state=self.state, user_message=user_message)

        if self.store.session_id == session_id:
            reply = self.store.new_message(MODEL, reply_text)
            self.store.append(reply)
        else:
            reply = self._record_elsewhere(session_id, user_message, reply_text)

        self.state = TurnState.IDLE
        return TurnOutcome(state=self.state, user_message=user_message, reply=reply)

    def _record_elsewhere(self, session_id: str, trigger: Message, reply_text: str) -> Message:
        """
        The view switched sessions while the model was answering. Persist the
        reply to the session that asked, without touching the visible log.
        """
        value = max(self.store.clock(), int(trigger.id) + 1)
        reply = Message(id=str(value), role=MODEL, text=reply_text, timestamp=value)
        try:
            self.store.repository.append_message(session_id, reply)
        except PersistenceUnavailable:
            log.warning("Reply for inactive session %s was not saved", session_id, exc_info=True)
            return reply
        if self.store.directory is not None:
            self.store.directory.refresh()
        return reply

    # -----------------------------
    # Playback (per view)
    # -----------------------------
    def toggle_speech(self, message: Message) -> Optional[str]:
        """
        Start or stop reading `message` aloud. Returns the text to speak, or
        None when playback was stopped.
        """
        if self.speaking_id == message.id:
            self.stop_speech()
            return None
        self.speaking_id = message.id
        return clean_text(message.text)

    def stop_speech(self) -> None:
        self.speaking_id = None
