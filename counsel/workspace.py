import logging
from typing import Callable, Iterable, Optional

from counsel.assessment import Answer, record_result, score
from counsel.directory import SessionDirectory
from counsel.errors import PersistenceUnavailable
from counsel.messages import GUEST_WELCOME, MessageStore, member_welcome
from counsel.models import AssessmentResult, Identity, UserProfile
from counsel.orchestrator import ConversationOrchestrator, LanguageModel, TurnOutcome, TurnState
from counsel.repository import build_repository
from counsel.storage import DocumentStore, SQLKeyValueStore

log = logging.getLogger(__name__)


class ChatWorkspace:
    """
    Everything one view needs for a single scope: the repository picked
    from the identity, the session directory, the active message log and
    the turn orchestrator.
    """

    def __init__(
        self,
        identity: Optional[Identity],
        kv: SQLKeyValueStore,
        model: LanguageModel,
        docs: Optional[DocumentStore] = None,
        on_safety_trip: Optional[Callable[[], None]] = None,
    ):
        self.identity = identity
        self.kv = kv
        self.docs = docs
        self.model = model
        self.on_safety_trip = on_safety_trip

        self.repository = build_repository(identity, kv, docs)
        self.directory = SessionDirectory(self.repository)
        self.store = MessageStore(
            self.repository,
            self.directory,
            welcome_text=member_welcome(identity.name) if identity else GUEST_WELCOME,
        )
        self.orchestrator = ConversationOrchestrator(
            self.store,
            model,
            on_safety_trip=on_safety_trip,
            user_id=identity.id if identity else None,
        )

    @property
    def verification_required(self) -> bool:
        """Signed in but unverified: chat stays suspended behind the verification gate."""
        return self.identity is not None and not self.identity.verified

    def open(self) -> None:
        if self.verification_required:
            log.info("Workspace for %s waits for verification", self.identity.id)
            return
        self.directory.list()

    def close(self) -> None:
        self.store.close()
        self.directory.close()
        self.orchestrator.stop_speech()

    def switch_identity(self, identity: Optional[Identity]) -> "ChatWorkspace":
        """Tear this workspace down and open one for `identity`."""
        self.close()
        workspace = ChatWorkspace(
            identity,
            self.kv,
            self.model,
            docs=self.docs,
            on_safety_trip=self.on_safety_trip,
        )
        workspace.open()
        return workspace

    def submit(self, text: str) -> TurnOutcome:
        if self.verification_required:
            return TurnOutcome(state=TurnState.IDLE, rejected=True)
        return self.orchestrator.submit(text)

    # -----------------------------
    # Profile & assessment
    # -----------------------------
    def profile(self) -> Optional[UserProfile]:
        try:
            return self.repository.load_profile()
        except PersistenceUnavailable:
            log.warning("Profile unavailable", exc_info=True)
            return None

    def save_profile(self, profile: UserProfile) -> bool:
        try:
            self.repository.save_profile(profile)
        except PersistenceUnavailable:
            log.warning("Profile not saved", exc_info=True)
            return False
        return True

    def record_assessment(self, answers: Iterable[Answer]) -> AssessmentResult:
        """Score `answers` and append the result to the profile's triage history."""
        result = score(answers)
        profile = self.profile() or UserProfile(name=self.identity.name if self.identity else "")
        self.save_profile(record_result(profile, result))
        return result
