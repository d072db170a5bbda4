from itertools import product

import pytest

from counsel.assessment import BANDS, Answer, record_result, score
from counsel.errors import IncompleteAssessment
from counsel.models import UserProfile


def answers(*values):
    return [Answer(question_id=i, selected_value=v) for i, v in enumerate(values, start=1)]


def test_all_top_answers_score_100_in_strongest_band():
    result = score(answers(5, 5, 5, 5, 5))
    assert result.score == 100
    assert result.summary == BANDS[0].summary
    assert result.recommendation == BANDS[0].recommendation


def test_all_lowest_answers_land_in_weakest_band():
    result = score(answers(1, 1, 1, 1, 1))
    assert result.score == 20
    assert result.summary == BANDS[-1].summary


def test_percentage_is_rounded_mean():
    assert score(answers(4, 3)).score == 70
    assert score(answers(3, 3, 4)).score == 67


def test_skipped_questions_are_excluded_not_zero():
    assert score(answers(5, None, 5)).score == 100


def test_repeated_question_keeps_last_answer():
    result = score([Answer(1, 1), Answer(1, 5)])
    assert result.score == 100


@pytest.mark.parametrize("given", [[], answers(None, None)])
def test_no_answers_is_incomplete(given):
    with pytest.raises(IncompleteAssessment):
        score(given)


@pytest.mark.parametrize("bad", [0, 6, 2.5, True])
def test_out_of_range_values_are_rejected(bad):
    with pytest.raises(ValueError):
        score(answers(3, bad))


def test_rescoring_is_idempotent():
    given = answers(4, 2, 5, 3)
    assert score(given).model_dump() == score(given).model_dump()


def test_raising_any_answer_never_lowers_the_score():
    for values in product(range(1, 6), repeat=3):
        base = score(answers(*values)).score
        for i, value in enumerate(values):
            if value == 5:
                continue
            higher = list(values)
            higher[i] = value + 1
            assert score(answers(*higher)).score >= base


def test_record_result_appends_without_touching_the_original():
    profile = UserProfile(name="Sam", spouse_name="Alex")
    first = record_result(profile, score(answers(2, 2)), date=1000)
    second = record_result(first, score(answers(5, 5)), date=2000)

    assert profile.triage_history == []
    assert [r.score for r in first.triage_history] == [40]
    assert [(r.date, r.score) for r in second.triage_history] == [(1000, 40), (2000, 100)]
