import pytest
from sqlmodel import select

from elearn import auth, models, services
from elearn.errors import AccessCodeRejected, CapacityExceeded, ValidationError


def test_relogin_returns_same_session(db, make_course, make_code):
    course = make_course()
    make_code(course, code="FIRE1")
    manager = services.SessionManager(db)
    first, token = manager.login("Jan Novak", "jan@example.cz", "FIRE1", ip_address="1.2.3.4", user_agent="ua")
    again, _ = manager.login("Jan Novak", "jan@example.cz", "FIRE1")
    assert first.id == again.id
    assert first.ip_address == "1.2.3.4"
    assert auth.decode_token(token)["session_id"] == first.id


def test_login_trims_identity_and_code(db, make_course, make_code):
    course = make_course()
    make_code(course, code="FIRE1")
    manager = services.SessionManager(db)
    first, _ = manager.login(" Jan ", "jan@example.cz ", " FIRE1 ")
    again, _ = manager.login("Jan", "jan@example.cz", "FIRE1")
    assert first.id == again.id


def test_third_login_exceeds_capacity(db, make_course, make_code):
    course = make_course()
    make_code(course, code="CAP2", max_participants=2)
    manager = services.SessionManager(db)
    manager.login("A", "a@x.cz", "CAP2")
    manager.login("B", "b@x.cz", "CAP2")
    with pytest.raises(CapacityExceeded):
        manager.login("C", "c@x.cz", "CAP2")
    assert len(db.exec(select(models.StudentSession)).all()) == 2


def test_existing_student_can_relogin_at_capacity(db, make_course, make_code):
    course = make_course()
    make_code(course, code="CAP1", max_participants=1)
    manager = services.SessionManager(db)
    first, _ = manager.login("A", "a@x.cz", "CAP1")
    again, _ = manager.login("A", "a@x.cz", "CAP1")
    assert again.id == first.id


def test_login_requires_all_fields(db):
    with pytest.raises(ValidationError):
        services.SessionManager(db).login("", "a@x.cz", "X")


def test_login_with_unknown_code(db):
    with pytest.raises(AccessCodeRejected):
        services.SessionManager(db).login("A", "a@x.cz", "NOPE")


def test_theory_only_completion_issues_one_certificate(db, make_course, make_code):
    course = make_course()
    make_code(course, code="THEO1", theory_to_test=False)
    manager = services.SessionManager(db)
    student, _ = manager.login("A", "a@x.cz", "THEO1")

    theory_to_test, certificate = manager.complete_theory(student)
    assert theory_to_test is False
    assert certificate is not None
    assert certificate.test_attempt_id is None
    assert certificate.certificate_number.startswith("CERT-THEO1-")

    _, again = manager.complete_theory(student)
    assert again.id == certificate.id
    certs = db.exec(select(models.Certificate).where(models.Certificate.student_session_id == student.id)).all()
    assert len(certs) == 1


def test_theory_completion_keeps_first_timestamp(db, make_course, make_code):
    course = make_course()
    make_code(course, code="FIRE1")
    manager = services.SessionManager(db)
    student, _ = manager.login("A", "a@x.cz", "FIRE1")
    theory_to_test, certificate = manager.complete_theory(student)
    assert theory_to_test is True
    assert certificate is None
    completed_at = student.theory_completed_at
    manager.complete_theory(student)
    assert manager.get(student.id).theory_completed_at == completed_at


def test_theory_lists_slides_in_order_and_marks_start(db, make_course, make_code):
    course = make_course()
    make_code(course, code="FIRE1")
    db.add(models.TheorySlide(course_id=course.id, title="second", slide_order=2))
    db.add(models.TheorySlide(course_id=course.id, title="first", slide_order=1))
    db.add(models.TheorySlide(course_id=course.id, title="hidden", slide_order=3, is_active=False))
    db.commit()
    manager = services.SessionManager(db)
    student, _ = manager.login("A", "a@x.cz", "FIRE1")
    slides = manager.theory(student)
    assert [s.title for s in slides] == ["first", "second"]
    assert manager.get(student.id).theory_started_at is not None
    assert manager.progress(student)["status"] == services.CompletionStatus.THEORY_IN_PROGRESS.value


def test_progress_status_for_theory_only_path(db, make_course, make_code):
    course = make_course()
    make_code(course, code="THEO1", theory_to_test=False)
    manager = services.SessionManager(db)
    student, _ = manager.login("A", "a@x.cz", "THEO1")
    progress = manager.progress(student)
    assert progress["status"] == "not_started"
    assert progress["is_terminal"] is False
    manager.complete_theory(student)
    progress = manager.progress(student)
    assert progress["status"] == "certified"
    assert progress["is_terminal"] is True
    assert progress["certificate"] is not None


def test_completion_status_transitions():
    access_code = models.AccessCode(code="X", course_id=1, valid_until=None, theory_to_test=True)
    student = models.StudentSession(access_code_id=1, student_name="A", student_email="a@x.cz")
    status = services.completion_status
    assert status(student, access_code, [], None) == services.CompletionStatus.NOT_STARTED
    student.theory_started_at = models.utcnow()
    assert status(student, access_code, [], None) == services.CompletionStatus.THEORY_IN_PROGRESS
    student.theory_completed_at = models.utcnow()
    assert status(student, access_code, [], None) == services.CompletionStatus.TEST_PENDING
    failed = models.TestAttempt(student_session_id=1, score=0, max_score=1, percentage=0, passed=False,
                                started_at=models.utcnow())
    assert status(student, access_code, [failed], None) == services.CompletionStatus.TEST_FAILED
    passed = models.TestAttempt(student_session_id=1, score=1, max_score=1, percentage=100, passed=True,
                                started_at=models.utcnow(), attempt_number=2)
    assert status(student, access_code, [passed, failed], None) == services.CompletionStatus.TEST_PASSED
    cert = models.Certificate(student_session_id=1, certificate_number="C", verification_code="v")
    assert status(student, access_code, [passed, failed], cert) == services.CompletionStatus.CERTIFIED

    assert services.is_terminal(services.CompletionStatus.TEST_FAILED, 0) is True
    assert services.is_terminal(services.CompletionStatus.TEST_FAILED, 1) is False

    access_code.theory_to_test = False
    assert status(student, access_code, [], None) == services.CompletionStatus.THEORY_COMPLETED
