import logging
import os
from datetime import datetime

import streamlit as st

from counsel.assessment import Answer
from counsel.db import init_db
from counsel.errors import IncompleteAssessment
from counsel.formatting import to_markdown
from counsel.llm import OpenAIChatModel, build_langfuse
from counsel.models import Identity, USER, UserProfile
from counsel.storage import InMemoryDocumentStore, SQLKeyValueStore
from counsel.workspace import ChatWorkspace

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Initialize DB schema (idempotent)
init_db()

st.set_page_config(page_title="KFM Counsel", page_icon="🕊️")

CHECK_IN_TOPICS = [
    "Communication",
    "Emotional connection",
    "How conflicts end",
    "Spiritual alignment",
    "Intimacy & affection",
]


@st.cache_resource
def shared_resources():
    """Collaborators shared across reruns and browser sessions."""
    return (
        SQLKeyValueStore(),
        InMemoryDocumentStore(),
        OpenAIChatModel(langfuse=build_langfuse()),
    )


kv, docs, model = shared_resources()


def trigger_safety():
    st.session_state.safety_mode = True


# -----------------------------
# Sidebar: identity
# -----------------------------
st.sidebar.header("Account")

signed_in = st.sidebar.toggle("Signed in", value=False)
identity = None
if signed_in:
    user_id = st.sidebar.text_input("User ID", value="member1")
    display_name = st.sidebar.text_input("Display name", value="Friend")
    verified = st.sidebar.checkbox("Email verified", value=True)
    identity = Identity(id=user_id, name=display_name, verified=verified)

workspace: ChatWorkspace = st.session_state.get("workspace")
if workspace is None:
    workspace = ChatWorkspace(identity, kv, model, docs=docs, on_safety_trip=trigger_safety)
    workspace.open()
elif workspace.identity != identity:
    workspace = workspace.switch_identity(identity)
st.session_state.workspace = workspace
st.session_state.setdefault("safety_mode", False)

st.title("🕊️ KFM Counsel")

if workspace.verification_required:
    st.warning(
        "Please verify your email address to continue. "
        "Check your inbox for the verification link, then refresh."
    )
    st.stop()


# -----------------------------
# Sidebar: sessions
# -----------------------------
directory = workspace.directory
st.sidebar.header("Conversations")

if st.sidebar.button("➕ New Conversation"):
    created = directory.create()
    if created is None:
        st.sidebar.error("Could not start a new conversation. Please try again.")
    else:
        directory.select(created)
        st.rerun()

for session in directory.list():
    active = session.id == directory.active_session_id
    col_open, col_delete = st.sidebar.columns([5, 1])
    label = f"{'▶ ' if active else ''}{session.title}"
    updated = datetime.fromtimestamp(session.updated_at / 1000).strftime("%Y-%m-%d")
    if col_open.button(label, key=f"open_{session.id}", help=session.preview or None):
        directory.select(session.id)
        st.rerun()
    if col_delete.button("🗑️", key=f"delete_{session.id}"):
        if directory.remove(session.id):
            st.rerun()
        st.sidebar.error("Could not delete this conversation. Please try again.")
    st.sidebar.caption(f"{session.message_count} messages • {updated}")


# -----------------------------
# Sidebar: profile & check-in
# -----------------------------
profile = workspace.profile() or UserProfile()

with st.sidebar.expander("Your profile"):
    name = st.text_input("Your name", value=profile.name)
    spouse = st.text_input("Spouse's name", value=profile.spouse_name)
    if st.button("Save profile"):
        workspace.save_profile(profile.model_copy(update={"name": name, "spouse_name": spouse}))
        st.success("Profile saved.")

with st.sidebar.expander("Relationship check-in"):
    answers = []
    for i, topic in enumerate(CHECK_IN_TOPICS, start=1):
        value = st.select_slider(topic, options=["skip", 1, 2, 3, 4, 5], value="skip", key=f"q{i}")
        answers.append(Answer(question_id=i, selected_value=None if value == "skip" else value))
    if st.button("Score check-in"):
        try:
            result = workspace.record_assessment(answers)
        except IncompleteAssessment:
            st.info("Answer at least one question.")
        else:
            st.metric("Score", f"{result.score}%")
            st.write(result.summary)
            st.caption(result.recommendation)


# -----------------------------
# Safety escalation
# -----------------------------
orchestrator = workspace.orchestrator

if st.session_state.safety_mode:
    st.error(
        "It sounds like you may be in a difficult or unsafe situation. "
        "If you are in immediate danger, call 911 or your local emergency number now. "
        "You can also reach the 988 Suicide & Crisis Lifeline or the National Domestic "
        "Violence Hotline at 1-800-799-7233."
    )
    if st.button("I'm safe, return to chat"):
        st.session_state.safety_mode = False
        orchestrator.dismiss_safety()
        st.rerun()


# -----------------------------
# Conversation
# -----------------------------
store = workspace.store

for message in store.messages:
    with st.chat_message("user" if message.role == USER else "assistant"):
        st.markdown(message.text if message.role == USER else to_markdown(message.text))
        if message.id in store.unsynced:
            st.caption("Not synced")

if st.sidebar.button("Clear chat history"):
    if not store.clear_history():
        st.sidebar.info("To remove cloud history, delete the conversation instead.")
    st.rerun()

prompt = st.chat_input(
    "Type your message...",
    disabled=orchestrator.busy or store.session_id is None,
)

if prompt:
    with st.spinner("KFM Counsel is praying & thinking..."):
        outcome = workspace.submit(prompt)
    if outcome.error:
        st.toast("The counselor could not answer just now. Please try again.")
    st.rerun()

st.caption('Disclaimer: This is AI-generated advice. For emergencies, use "Need Human Help?".')
