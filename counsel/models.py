import time
from datetime import datetime, timezone
from typing import List, Literal, Optional

from sqlmodel import SQLModel, Field


DEFAULT_TITLE = "New Conversation"
TITLE_LENGTH = 40
PREVIEW_LENGTH = 50

USER = "user"
MODEL = "model"


def now_ms() -> int:
    """Wall clock in milliseconds, the unit every timestamp uses."""
    return int(time.time() * 1000)


def truncate(text: str, length: int) -> str:
    return text[:length] + ("..." if len(text) > length else "")


class Message(SQLModel):
    """
    One entry of a session's log. Never mutated after creation.
    """
    id: str
    role: Literal["user", "model"]
    text: str                        # raw, keeps [[Reference]] markers
    timestamp: int
    is_safety_warning: Optional[bool] = None


class ChatSession(SQLModel):
    """
    Metadata record for a session; the rollup keeps it current.
    """
    id: str
    title: str = DEFAULT_TITLE
    preview: str = ""
    created_at: int
    updated_at: int
    message_count: int = Field(default=0, ge=0)


class TriageRecord(SQLModel):
    date: int
    score: int
    summary: str


class UserProfile(SQLModel):
    name: str = ""
    spouse_name: str = ""
    anniversary: Optional[str] = None
    struggles: List[str] = Field(default_factory=list)
    triage_history: List[TriageRecord] = Field(default_factory=list)


class AssessmentResult(SQLModel):
    score: int
    summary: str
    recommendation: str


class Identity(SQLModel):
    """
    What the identity provider tells us about the signed-in user.
    """
    id: str
    name: str = "User"
    verified: bool = True


class LocalEntry(SQLModel, table=True):
    """
    Key/value row backing the identity-absent store.
    """
    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
