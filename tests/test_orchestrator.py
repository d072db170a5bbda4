from unittest.mock import Mock

import pytest

from counsel.directory import SessionDirectory
from counsel.errors import ModelCallFailed, PersistenceUnavailable
from counsel.messages import MessageStore
from counsel.models import TriageRecord, UserProfile
from counsel.orchestrator import ConversationOrchestrator, TurnState
from counsel.repository import LocalRepository

from conftest import FakeModel


@pytest.fixture
def store(repository):
    session_id = repository.create_session()
    store = MessageStore(repository)
    store.activate(session_id)
    return store


def roles(store):
    return [m.role for m in store.log]


def test_trip_on_user_text_skips_the_model(store, fake_model):
    on_trip = Mock()
    orchestrator = ConversationOrchestrator(store, fake_model, on_safety_trip=on_trip)

    outcome = orchestrator.submit("I feel scared for my life")

    assert outcome.tripped
    assert orchestrator.state is TurnState.SAFETY_TRIPPED
    on_trip.assert_called_once_with()
    assert fake_model.prompts == []
    assert roles(store) == ["user"]
    assert store.log[0].text == "I feel scared for my life"
    assert store.log[0].is_safety_warning is True
    assert len(store.repository.load_messages(store.session_id)) == 1


def test_scripture_marker_survives_to_storage(store):
    store.repository.save_profile(UserProfile(
        name="Sam",
        spouse_name="Alex",
        triage_history=[TriageRecord(date=1, score=72, summary="Healthy with room to grow")],
    ))
    model = FakeModel(reply="Be patient with one another, as [[Ephesians 4:2]] reminds us.")
    orchestrator = ConversationOrchestrator(store, model)

    outcome = orchestrator.submit("How can we communicate better?")

    assert outcome.state is TurnState.IDLE
    prompt = model.prompts[0]
    assert prompt.startswith("How can we communicate better?\n[Context: User Name: Sam, Spouse: Alex]")
    assert "Latest Assessment Score: 72%" in prompt

    stored = store.repository.load_messages(store.session_id)
    assert [m.role for m in stored] == ["user", "model"]
    assert "[[Ephesians 4:2]]" in stored[1].text
    assert stored[0].text == "How can we communicate better?"


def test_no_profile_sends_text_as_is(store, fake_model):
    ConversationOrchestrator(store, fake_model).submit("  How can we communicate better?  ")
    assert fake_model.prompts == ["How can we communicate better?"]


def test_tripped_reply_is_not_appended(store):
    on_trip = Mock()
    model = FakeModel(reply="If you are in danger, call 911 right away.")
    orchestrator = ConversationOrchestrator(store, model, on_safety_trip=on_trip)

    outcome = orchestrator.submit("We had a rough evening")

    assert outcome.tripped
    assert outcome.reply is None
    on_trip.assert_called_once_with()
    assert roles(store) == ["user"]
    assert store.log[0].is_safety_warning is None


def test_model_failure_returns_to_idle_without_reply(store):
    model = FakeModel(error=ModelCallFailed("quota exceeded"))
    orchestrator = ConversationOrchestrator(store, model)

    outcome = orchestrator.submit("Are we going to be okay?")

    assert outcome.state is TurnState.IDLE
    assert outcome.error == "quota exceeded"
    assert outcome.reply is None
    assert roles(store) == ["user"]
    assert not orchestrator.busy


def test_reply_id_sorts_after_trigger_in_same_millisecond(local_repo, fake_model):
    session_id = local_repo.create_session()
    store = MessageStore(local_repo, clock=lambda: 1000)
    store.activate(session_id)

    outcome = ConversationOrchestrator(store, fake_model).submit("Hello")

    assert int(outcome.reply.id) > int(outcome.user_message.id)


@pytest.mark.parametrize("text", ["", "   ", None])
def test_blank_submission_is_rejected(store, fake_model, text):
    outcome = ConversationOrchestrator(store, fake_model).submit(text)
    assert outcome.rejected
    assert store.log == []


def test_second_submission_while_awaiting_is_rejected(store):
    inner = {}
    model = FakeModel(reply="First answer")
    orchestrator = ConversationOrchestrator(store, model)

    def resubmit():
        assert orchestrator.busy
        assert orchestrator.state is TurnState.AWAITING_MODEL_REPLY
        inner["outcome"] = orchestrator.submit("Another question")

    model.hook = resubmit
    outcome = orchestrator.submit("First question")

    assert inner["outcome"].rejected
    assert outcome.reply.text == "First answer"
    assert [m.text for m in store.log] == ["First question", "First answer"]
    assert len(model.prompts) == 1


def test_persistence_failure_keeps_turn_going(kv, fake_model):
    class Offline(LocalRepository):
        def append_message(self, session_id, message):
            raise PersistenceUnavailable("offline")

    repo = Offline(kv)
    store = MessageStore(repo)
    store.activate(repo.create_session())

    outcome = ConversationOrchestrator(store, fake_model).submit("Hello")

    assert outcome.reply is not None
    assert roles(store) == ["user", "model"]
    assert store.unsynced == {m.id for m in store.log}


def test_reply_after_session_switch_goes_to_original_session(local_repo):
    first = local_repo.create_session()
    second = local_repo.create_session()
    store = MessageStore(local_repo)
    store.activate(first)
    model = FakeModel(reply="Late answer", hook=lambda: store.activate(second))

    outcome = ConversationOrchestrator(store, model).submit("Question")

    assert store.session_id == second
    assert store.log == []
    saved = local_repo.load_messages(first)
    assert [m.text for m in saved] == ["Question", "Late answer"]
    assert int(outcome.reply.id) > int(outcome.user_message.id)


def test_late_reply_updates_local_sidebar_counts(local_repo):
    directory = SessionDirectory(local_repo)
    store = MessageStore(local_repo, directory)
    first = directory.list()[0].id
    second = directory.create()
    model = FakeModel(reply="Late answer", hook=lambda: directory.select(second))

    ConversationOrchestrator(store, model).submit("Question")

    assert store.session_id == second
    listed = {s.id: s for s in directory.list()}
    assert listed[first].message_count == 2
    assert listed[first].title == "Question"


def test_dismiss_safety_returns_to_idle(store, fake_model):
    orchestrator = ConversationOrchestrator(store, fake_model)
    orchestrator.submit("I want to die")

    orchestrator.dismiss_safety()

    assert orchestrator.state is TurnState.IDLE


def test_speech_toggle_and_stop_on_session_switch(local_repo):
    first = local_repo.create_session()
    second = local_repo.create_session()
    store = MessageStore(local_repo)
    store.activate(first)
    orchestrator = ConversationOrchestrator(store, FakeModel(reply="Read **this** [[Mark 10:9]]"))
    reply = orchestrator.submit("Hello").reply

    assert orchestrator.toggle_speech(reply) == "Read this Mark 10:9"
    assert orchestrator.speaking_id == reply.id
    assert orchestrator.toggle_speech(reply) is None
    assert orchestrator.speaking_id is None

    orchestrator.toggle_speech(reply)
    store.activate(second)
    assert orchestrator.speaking_id is None
