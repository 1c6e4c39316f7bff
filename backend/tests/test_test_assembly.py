import random
from collections import Counter
from dataclasses import asdict

import pytest

from elearn import models, services
from elearn.errors import NotFoundError, PolicyViolation


@pytest.mark.parametrize("cap,total,expected", [(3, 5, 3), (10, 4, 4), (None, 4, 4), (0, 4, 4)])
def test_build_test_returns_min_of_cap_and_total(db, make_course, make_question, cap, total, expected):
    course = make_course(max_questions_in_test=cap)
    for i in range(total):
        make_question(course, text=f"Q{i}", order=i + 1)
    questions = services.TestAssembler(db, rng=random.Random(1)).build_test(course)
    assert len(questions) == expected
    assert len({q.id for q in questions}) == expected


def test_presented_questions_hide_answer_keys(db, make_course, make_question):
    course = make_course()
    make_question(course, options=("A", "B", "C", "D"), correct="B", explanation="because")
    presented = services.TestAssembler(db).build_test(course)[0]
    data = asdict(presented)
    assert "correct_answers" not in data
    assert "explanation" not in data
    assert sorted(data["options"]) == ["A", "B", "C", "D"]


def test_options_are_shuffled_on_a_copy(db, make_course, make_question):
    course = make_course()
    question = make_question(course, options=("A", "B", "C", "D", "E", "F"))
    assembler = services.TestAssembler(db, rng=random.Random(7))
    orders = {tuple(assembler.build_test(course)[0].options) for _ in range(20)}
    assert len(orders) > 1
    db.refresh(question)
    assert question.options == ["A", "B", "C", "D", "E", "F"]


def test_subset_selection_covers_all_questions(db, make_course, make_question):
    course = make_course(max_questions_in_test=1)
    for i in range(3):
        make_question(course, text=f"Q{i}", order=i + 1)
    assembler = services.TestAssembler(db, rng=random.Random(3))
    seen = Counter(assembler.build_test(course)[0].question_text for _ in range(300))
    assert set(seen) == {"Q0", "Q1", "Q2"}
    assert min(seen.values()) > 50


def test_inactive_questions_are_excluded(db, make_course, make_question):
    course = make_course()
    make_question(course, text="live")
    hidden = make_question(course, text="gone")
    hidden.is_active = False
    db.add(hidden)
    db.commit()
    questions = services.TestAssembler(db).build_test(course)
    assert [q.question_text for q in questions] == ["live"]


def test_course_without_questions_builds_empty_test(db, make_course):
    assert services.TestAssembler(db).build_test(make_course()) == []


def _logged_in(db, code):
    manager = services.SessionManager(db)
    student, _ = manager.login("A", "a@x.cz", code)
    return manager, student


def test_start_test_requires_theory(db, make_course, make_code, make_question):
    course = make_course()
    make_code(course, code="FIRE1")
    make_question(course)
    manager, student = _logged_in(db, "FIRE1")
    svc = services.StudentTestService(db)
    with pytest.raises(PolicyViolation):
        svc.start_test(student)
    manager.complete_theory(student)
    questions = svc.start_test(student)
    assert len(questions) == 1
    assert manager.get(student.id).test_started_at is not None


def test_start_test_without_questions(db, make_course, make_code):
    course = make_course()
    make_code(course, code="FIRE1")
    manager, student = _logged_in(db, "FIRE1")
    manager.complete_theory(student)
    with pytest.raises(NotFoundError):
        services.StudentTestService(db).start_test(student)


def test_start_test_after_attempts_are_used_up(db, make_course, make_code, make_question):
    course = make_course(max_attempts=1)
    make_code(course, code="FIRE1")
    q = make_question(course)
    manager, student = _logged_in(db, "FIRE1")
    manager.complete_theory(student)
    svc = services.StudentTestService(db)
    svc.start_test(student)
    svc.submit(student, {str(q.id): "A"}, 30)
    with pytest.raises(PolicyViolation):
        svc.start_test(student)


def test_certified_session_cannot_restart_test(db, make_course, make_code, make_question):
    course = make_course()
    make_code(course, code="FIRE1")
    q = make_question(course)
    manager, student = _logged_in(db, "FIRE1")
    manager.complete_theory(student)
    svc = services.StudentTestService(db)
    result = svc.submit(student, {str(q.id): "B"}, 30)
    assert result.certificate is not None
    with pytest.raises(PolicyViolation):
        svc.start_test(student)


def test_presented_question_type_is_kept(db, make_course, make_question):
    course = make_course()
    make_question(course, question_type=models.MULTIPLE_CHOICE, correct=["A", "C"])
    presented = services.TestAssembler(db).build_test(course)[0]
    assert presented.question_type == models.MULTIPLE_CHOICE
    assert presented.points == 1
