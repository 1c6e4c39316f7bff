from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from elearn import models
from elearn.database import engine


def test_utcnow_is_timezone_aware():
    now = models.utcnow()
    assert now.tzinfo is not None
    assert now.utcoffset() == timedelta(0)


def test_timestamps_load_back_as_utc(db, make_course, make_code):
    course = make_course()
    code = make_code(course, code="FIRE1")
    started = models.utcnow() - timedelta(minutes=3)
    db.add(models.StudentSession(access_code_id=code.id, student_name="Jan", student_email="jan@x.cz",
                                 test_started_at=started))
    db.commit()

    with Session(engine) as other:
        row = other.exec(select(models.StudentSession)).one()
    assert row.created_at.tzinfo is not None
    assert row.theory_completed_at is None
    assert row.test_started_at == started
    assert (models.utcnow() - row.test_started_at) >= timedelta(minutes=3)


def test_naive_and_offset_values_are_stored_as_utc(db, make_course):
    course = make_course()
    course.updated_at = datetime(2026, 1, 1, 12, 0)
    db.add(course)
    db.commit()
    db.refresh(course)
    assert course.updated_at == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    course.updated_at = datetime(2026, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    db.add(course)
    db.commit()
    db.refresh(course)
    assert course.updated_at == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert course.updated_at.utcoffset() == timedelta(0)
