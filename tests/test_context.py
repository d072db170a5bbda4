from counsel.context import MAX_ANNOTATION_CHARS, build_annotation, compose
from counsel.models import TriageRecord, UserProfile


BASE = "How can we communicate better?"


def test_no_profile_leaves_prompt_unchanged():
    assert compose(BASE) == BASE
    assert compose(BASE, None) == BASE


def test_profile_without_history_adds_names_only():
    profile = UserProfile(name="Sam", spouse_name="Alex")
    assert compose(BASE, profile) == BASE + "\n[Context: User Name: Sam, Spouse: Alex]"


def test_only_latest_assessment_is_used():
    profile = UserProfile(
        name="Sam",
        spouse_name="Alex",
        triage_history=[
            TriageRecord(date=1, score=40, summary="older summary"),
            TriageRecord(date=2, score=72, summary="latest summary"),
        ],
    )
    prompt = compose(BASE, profile)

    assert prompt.startswith(BASE + "\n[Context:")
    assert prompt.endswith(
        "\n[Case History: Latest Assessment Score: 72%, Summary: latest summary]"
    )
    assert "older summary" not in prompt


def test_annotation_length_is_capped():
    profile = UserProfile(
        name="N" * 500,
        spouse_name="S" * 500,
        triage_history=[TriageRecord(date=1, score=55, summary="x" * 10_000)],
    )
    annotation = build_annotation(profile)

    assert len(annotation) <= MAX_ANNOTATION_CHARS
    assert annotation.endswith("...]")
    assert compose(BASE, profile) == BASE + annotation
