"""Answer keys and per-question grading.

A question's correct answer is either a single option (`SingleAnswer`) or
a set of options (`MultipleAnswer`), chosen by the question type. Grading
is binary per question and weighted by points; nothing here touches the
database so results depend only on the submission and the canonical
questions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import ValidationError
from ..models import MULTIPLE_CHOICE, QUESTION_TYPES, SINGLE_CHOICE


@dataclass(frozen=True)
class SingleAnswer:
    value: str

    def matches(self, submitted: Any) -> bool:
        # strict: ["B"] is not "B"
        return isinstance(submitted, str) and submitted == self.value

    def display(self) -> str:
        return self.value

    def values(self) -> Tuple[str, ...]:
        return (self.value,)


@dataclass(frozen=True)
class MultipleAnswer:
    options: Tuple[str, ...]

    def matches(self, submitted: Any) -> bool:
        if not isinstance(submitted, (list, tuple)):
            return False
        if not all(isinstance(s, str) for s in submitted):
            return False
        return len(submitted) == len(self.options) and set(submitted) == set(self.options)

    def display(self) -> str:
        return ", ".join(self.options)

    def values(self) -> Tuple[str, ...]:
        return self.options


AnswerKey = Union[SingleAnswer, MultipleAnswer]


def parse_answer_key(question_type: str, raw: Any) -> AnswerKey:
    """Build the answer key for a stored `correct_answers` value.

    Raises `ValidationError` when the stored shape does not fit the type.
    """
    if question_type == SINGLE_CHOICE:
        if not isinstance(raw, str) or not raw:
            raise ValidationError("single_choice correct answer must be a non-empty string")
        return SingleAnswer(raw)
    if question_type == MULTIPLE_CHOICE:
        if not isinstance(raw, (list, tuple)) or not raw or not all(isinstance(r, str) for r in raw):
            raise ValidationError("multiple_choice correct answers must be a non-empty list of strings")
        if len(set(raw)) != len(raw):
            raise ValidationError("multiple_choice correct answers must not repeat")
        return MultipleAnswer(tuple(raw))
    raise ValidationError(f"unsupported question type: {question_type}")


def stringify_answer(value: Any) -> str:
    """Render a submitted answer for review screens."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


@dataclass
class GradedItem:
    question_id: int
    selected_answer: str
    correct_answer: str
    is_correct: bool
    points: int
    explanation: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            'question_id': self.question_id,
            'selected_answer': self.selected_answer,
            'correct_answer': self.correct_answer,
            'is_correct': self.is_correct,
            'explanation': self.explanation,
        }


@dataclass
class ScoreSummary:
    score: int
    max_score: int
    percentage: float
    passed: bool
    items: List[GradedItem] = field(default_factory=list)


def grade_submission(questions: Sequence[Any], answers: Mapping[int, Any], passing_score: int) -> ScoreSummary:
    """Grade `answers` (question id -> submitted value) against `questions`.

    Only the given questions count towards `max_score`; callers pass the
    canonical rows for the answered ids. A zero `max_score` yields 0%.
    """
    score = 0
    max_score = 0
    items: List[GradedItem] = []
    for q in questions:
        points = q.points or 1
        max_score += points
        key = parse_answer_key(q.question_type, q.correct_answers)
        submitted = answers.get(q.id)
        is_correct = key.matches(submitted)
        if is_correct:
            score += points
        items.append(GradedItem(
            question_id=q.id,
            selected_answer=stringify_answer(submitted),
            correct_answer=key.display(),
            is_correct=is_correct,
            points=points,
            explanation=q.explanation or None,
        ))
    percentage = (score / max_score) * 100 if max_score > 0 else 0.0
    passed = percentage >= passing_score
    return ScoreSummary(
        score=score,
        max_score=max_score,
        percentage=round(percentage, 2),
        passed=passed,
        items=items,
    )


def validate_question_fields(question_type: str, options: Iterable[Any], correct_answers: Any, points: Any) -> None:
    """Check a question definition before it is stored."""
    if question_type not in QUESTION_TYPES:
        raise ValidationError(f"question_type must be one of {', '.join(QUESTION_TYPES)}")
    options = list(options or [])
    if len(options) < 2:
        raise ValidationError("a question needs at least two options")
    if not all(isinstance(o, str) and o.strip() for o in options):
        raise ValidationError("options must be non-empty strings")
    if len(set(options)) != len(options):
        raise ValidationError("options must be unique")
    key = parse_answer_key(question_type, correct_answers)
    missing = [v for v in key.values() if v not in options]
    if missing:
        raise ValidationError(f"correct answers not among options: {', '.join(missing)}")
    if not isinstance(points, int) or points < 1:
        raise ValidationError("points must be an integer >= 1")
