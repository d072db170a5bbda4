from sqlmodel import SQLModel, create_engine, Session
import os

LOCAL_DB_URL = os.getenv("LOCAL_DB_URL", "sqlite:///kfm_local.db")

engine = create_engine(
    LOCAL_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False} if LOCAL_DB_URL.startswith("sqlite") else {},
)


def init_db(bind=None):
    """Create all tables if they don't exist."""
    SQLModel.metadata.create_all(bind or engine)


def get_session(bind=None):
    """Provide a new SQLModel session."""
    return Session(bind or engine)
