from types import SimpleNamespace

import pytest

from elearn.errors import ValidationError
from elearn.models import MULTIPLE_CHOICE, SINGLE_CHOICE
from elearn.utils.grading import (
    MultipleAnswer,
    SingleAnswer,
    grade_submission,
    parse_answer_key,
    stringify_answer,
    validate_question_fields,
)


def _q(qid, correct, question_type=SINGLE_CHOICE, points=1, explanation=None):
    return SimpleNamespace(id=qid, question_type=question_type, correct_answers=correct,
                           points=points, explanation=explanation)


def test_single_choice_is_strict_scalar_equality():
    key = parse_answer_key(SINGLE_CHOICE, "B")
    assert isinstance(key, SingleAnswer)
    assert key.matches("B")
    assert not key.matches(["B"])
    assert not key.matches("b")
    assert not key.matches(None)


def test_multiple_choice_ignores_order():
    key = parse_answer_key(MULTIPLE_CHOICE, ["A", "C"])
    assert isinstance(key, MultipleAnswer)
    assert key.matches(["C", "A"])
    assert key.matches(["A", "C"])


def test_multiple_choice_rejects_subset_superset_and_duplicates():
    key = parse_answer_key(MULTIPLE_CHOICE, ["A", "C"])
    assert not key.matches(["A"])
    assert not key.matches(["A", "B", "C"])
    assert not key.matches(["A", "A", "C"])
    assert not key.matches("A")


def test_answer_key_shape_must_fit_type():
    with pytest.raises(ValidationError):
        parse_answer_key(SINGLE_CHOICE, ["B"])
    with pytest.raises(ValidationError):
        parse_answer_key(MULTIPLE_CHOICE, "B")
    with pytest.raises(ValidationError):
        parse_answer_key(MULTIPLE_CHOICE, ["A", "A"])
    with pytest.raises(ValidationError):
        parse_answer_key("essay", "B")


def test_four_of_five_at_80_percent_passes():
    questions = [_q(i, "B") for i in range(1, 6)]
    answers = {1: "B", 2: "B", 3: "B", 4: "B", 5: "A"}
    summary = grade_submission(questions, answers, passing_score=80)
    assert summary.score == 4
    assert summary.max_score == 5
    assert summary.percentage == 80.0
    assert summary.passed is True


def test_points_weight_the_score():
    questions = [_q(1, "B", points=3), _q(2, ["A", "C"], MULTIPLE_CHOICE, points=1)]
    summary = grade_submission(questions, {1: "B", 2: ["A"]}, passing_score=80)
    assert summary.score == 3
    assert summary.max_score == 4
    assert summary.percentage == 75.0
    assert summary.passed is False


def test_zero_max_score_gives_zero_percent():
    summary = grade_submission([], {}, passing_score=0)
    assert summary.percentage == 0
    assert summary.max_score == 0


def test_percentage_is_rounded_to_two_decimals():
    questions = [_q(i, "B") for i in range(1, 4)]
    summary = grade_submission(questions, {1: "B", 2: "A", 3: "A"}, passing_score=50)
    assert summary.percentage == 33.33
    assert summary.passed is False


def test_grading_is_deterministic():
    questions = [_q(1, "B"), _q(2, ["A", "C"], MULTIPLE_CHOICE, points=2)]
    answers = {1: "B", 2: ["C", "A"]}
    first = grade_submission(questions, answers, 80)
    second = grade_submission(questions, answers, 80)
    assert first.percentage == second.percentage == 100.0
    assert [i.as_dict() for i in first.items] == [i.as_dict() for i in second.items]


def test_review_rows_render_answers():
    questions = [_q(7, ["A", "C"], MULTIPLE_CHOICE, explanation="A and C")]
    summary = grade_submission(questions, {7: ["C", "A"]}, 80)
    row = summary.items[0].as_dict()
    assert row == {
        'question_id': 7,
        'selected_answer': "C, A",
        'correct_answer': "A, C",
        'is_correct': True,
        'explanation': "A and C",
    }
    assert stringify_answer(None) == ""


def test_validate_question_fields():
    validate_question_fields(SINGLE_CHOICE, ["A", "B"], "A", 1)
    validate_question_fields(MULTIPLE_CHOICE, ["A", "B", "C"], ["A", "C"], 2)
    with pytest.raises(ValidationError):
        validate_question_fields(SINGLE_CHOICE, ["A"], "A", 1)
    with pytest.raises(ValidationError):
        validate_question_fields(SINGLE_CHOICE, ["A", "A"], "A", 1)
    with pytest.raises(ValidationError):
        validate_question_fields(SINGLE_CHOICE, ["A", "B"], "C", 1)
    with pytest.raises(ValidationError):
        validate_question_fields(MULTIPLE_CHOICE, ["A", "B"], ["A", "Z"], 1)
    with pytest.raises(ValidationError):
        validate_question_fields(SINGLE_CHOICE, ["A", "B"], "A", 0)


def test_validate_question_fields_rejects_unknown_type():
    with pytest.raises(ValidationError, match="single_choice, multiple_choice"):
        validate_question_fields("essay", ["A", "B"], "A", 1)
