import os
import tempfile
from datetime import date, timedelta
from pathlib import Path

import pytest

# point the app at a throwaway database before `elearn` is imported
_TMP_DIR = tempfile.mkdtemp(prefix="elearn-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TMP_DIR) / 'test.db'}"
os.environ.setdefault("ENV", "dev")

from sqlmodel import SQLModel, Session  # noqa: E402

from elearn import auth, models  # noqa: E402
from elearn.database import engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test empty tables and a fresh login rate limiter."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    from elearn.main import login_rate_limiter
    login_rate_limiter.reset()
    yield


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_course(db):
    def _make(name="Fire Safety", passing_score=80, max_attempts=3, time_limit_minutes=None,
              max_questions_in_test=None, slug=None):
        course = models.Course(
            name=name,
            slug=slug or f"course-{name.lower().replace(' ', '-')}",
            passing_score=passing_score,
            max_attempts=max_attempts,
            time_limit_minutes=time_limit_minutes,
            max_questions_in_test=max_questions_in_test,
        )
        db.add(course)
        db.commit()
        db.refresh(course)
        return course
    return _make


@pytest.fixture
def make_code(db):
    def _make(course, code="FIRE123", max_participants=None, unlimited=False, theory_to_test=True,
              valid_until=None, company_id=None, is_active=True):
        if not unlimited and max_participants is None:
            max_participants = 10
        access_code = models.AccessCode(
            code=code,
            course_id=course.id,
            company_id=company_id,
            max_participants=None if unlimited else max_participants,
            unlimited_participants=unlimited,
            theory_to_test=theory_to_test,
            valid_until=valid_until or date.today() + timedelta(days=30),
            is_active=is_active,
        )
        db.add(access_code)
        db.commit()
        db.refresh(access_code)
        return access_code
    return _make


@pytest.fixture
def make_question(db):
    def _make(course, text="Pick one", options=("A", "B", "C", "D"), correct="B",
              question_type=models.SINGLE_CHOICE, points=1, order=None, explanation=None):
        question = models.TestQuestion(
            course_id=course.id,
            question_text=text,
            question_type=question_type,
            options=list(options),
            correct_answers=correct,
            points=points,
            question_order=order,
            explanation=explanation,
        )
        db.add(question)
        db.commit()
        db.refresh(question)
        return question
    return _make


@pytest.fixture
def make_admin(db):
    def _make(username="root", password="secret123"):
        admin = models.Admin(username=username, password_hash=auth.hash_password(password))
        db.add(admin)
        db.commit()
        db.refresh(admin)
        return admin
    return _make
