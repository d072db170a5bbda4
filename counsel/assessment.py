from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional

from counsel.errors import IncompleteAssessment
from counsel.models import AssessmentResult, TriageRecord, UserProfile, now_ms


MIN_VALUE = 1
MAX_VALUE = 5


@dataclass(frozen=True)
class Answer:
    question_id: int
    selected_value: Optional[int]    # None = skipped


class Band(NamedTuple):
    floor: int
    summary: str
    recommendation: str


# Highest floor first; the first band whose floor <= score wins.
BANDS: List[Band] = [
    Band(
        80,
        "Strong foundation. You and your spouse share healthy communication and connection.",
        "Keep investing in each other: protect regular time together and keep praying as a couple.",
    ),
    Band(
        60,
        "Healthy relationship with room to grow in a few areas.",
        "Pick one area that scored lower and talk about it together this week. "
        "Chat with KFM Counsel for practical next steps.",
    ),
    Band(
        40,
        "Your relationship is under noticeable strain and needs attention.",
        "Consider a structured conversation with a pastor or counselor, "
        "and use the chat to prepare for difficult talks.",
    ),
    Band(
        0,
        "Your relationship is experiencing significant strain.",
        "Please reach out to a human counselor soon. If you ever feel unsafe, contact emergency services.",
    ),
]


def _validate(answer: Answer) -> None:
    value = answer.selected_value
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Question {answer.question_id}: value must be an integer, got {value!r}")
    if not MIN_VALUE <= value <= MAX_VALUE:
        raise ValueError(
            f"Question {answer.question_id}: value {value} outside {MIN_VALUE}-{MAX_VALUE}"
        )


def band_for(percentage: int) -> Band:
    for band in BANDS:
        if percentage >= band.floor:
            return band
    return BANDS[-1]


def score(answers: Iterable[Answer]) -> AssessmentResult:
    """
    Score questionnaire answers.

    Skipped questions are left out of the mean (not counted as zero). A
    question answered twice keeps its last answer.
    """
    latest = {}
    for answer in answers:
        _validate(answer)
        if answer.selected_value is None:
            latest.pop(answer.question_id, None)
        else:
            latest[answer.question_id] = answer.selected_value

    if not latest:
        raise IncompleteAssessment("No questions were answered")

    mean = sum(latest.values()) / len(latest)
    percentage = round(mean / MAX_VALUE * 100)
    band = band_for(percentage)

    return AssessmentResult(
        score=percentage,
        summary=band.summary,
        recommendation=band.recommendation,
    )


def record_result(
    profile: UserProfile,
    result: AssessmentResult,
    date: Optional[int] = None,
) -> UserProfile:
    """Return a copy of `profile` with `result` appended to its triage history."""
    record = TriageRecord(
        date=date if date is not None else now_ms(),
        score=result.score,
        summary=result.summary,
    )
    history = list(profile.triage_history) + [record]
    return profile.model_copy(update={"triage_history": history})
