"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table and uses relationships where appropriate.

Uniqueness rules that guard concurrent requests live here as table
constraints: one session per (access code, name, email), one attempt per
(session, attempt number) and at most one valid certificate per session.
"""

from datetime import datetime, date, timezone
from typing import Any, List, Optional

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, text
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, Relationship

SINGLE_CHOICE = "single_choice"
MULTIPLE_CHOICE = "multiple_choice"
QUESTION_TYPES = (SINGLE_CHOICE, MULTIPLE_CHOICE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always loads as UTC.

    SQLite keeps no offset, so naive values read back are tagged as UTC;
    naive values bound by callers are assumed to be UTC as well.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Admin(SQLModel, table=True):
    """A platform (super) administrator.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    email: Optional[str] = None
    role: str = "admin"
    is_active: bool = True
    last_login: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Company(SQLModel, table=True):
    """A customer company whose employees receive access codes."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    admins: List['CompanyAdmin'] = Relationship(back_populates='company')


class CompanyAdmin(SQLModel, table=True):
    """An administrator scoped to a single `Company`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    company_id: int = Field(foreign_key='company.id')
    email: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_by: Optional[int] = Field(default=None, foreign_key='admin.id')
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    company: Optional[Company] = Relationship(back_populates='admins')


class Course(SQLModel, table=True):
    """A course made of theory slides and a test.

    `passing_score` is a percentage threshold compared inclusively.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    slug: str = Field(index=True, unique=True)
    abbreviation: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    passing_score: int = 80
    time_limit_minutes: Optional[int] = None
    max_attempts: int = 3
    max_questions_in_test: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class AccessCode(SQLModel, table=True):
    """A shared code admitting a cohort of students to one course.

    Active usage is not stored; it is derived from sessions that hold no
    valid certificate.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    company_id: Optional[int] = Field(default=None, foreign_key='company.id', index=True)
    max_participants: Optional[int] = None
    unlimited_participants: bool = False
    theory_to_test: bool = True
    valid_until: date
    is_active: bool = True
    created_by: Optional[int] = Field(default=None, foreign_key='admin.id')
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class TheorySlide(SQLModel, table=True):
    """One page of course reading material."""
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    title: Optional[str] = None
    content: Optional[str] = None
    slide_order: int
    media_urls: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    estimated_read_time: int = 2
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class TestQuestion(SQLModel, table=True):
    """A single or multiple choice test question.

    `correct_answers` holds a string for single choice questions and a list
    of strings for multiple choice ones; values are always taken from
    `options`.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key='course.id', index=True)
    question_text: str
    question_type: str = SINGLE_CHOICE
    options: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    correct_answers: Any = Field(default=None, sa_column=Column(JSON, nullable=False))
    explanation: Optional[str] = None
    media_url: Optional[str] = None
    points: int = 1
    difficulty_level: str = "medium"
    question_order: Optional[int] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class StudentSession(SQLModel, table=True):
    """A student's progress record for one access code.

    The (access code, name, email) triple identifies the session so the
    same student logging in again resumes it.
    """
    __table_args__ = (
        UniqueConstraint('access_code_id', 'student_name', 'student_email', name='uq_session_identity'),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    access_code_id: int = Field(foreign_key='accesscode.id', index=True)
    student_name: str
    student_email: str
    theory_started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    theory_completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    test_started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    attempts: List['TestAttempt'] = Relationship(back_populates='student_session')


class TestAttempt(SQLModel, table=True):
    """An immutable graded test submission."""
    __table_args__ = (
        UniqueConstraint('student_session_id', 'attempt_number', name='uq_attempt_number'),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    student_session_id: int = Field(foreign_key='studentsession.id', index=True)
    answers: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    answer_details: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    score: int
    max_score: int
    percentage: float
    passed: bool
    time_taken_seconds: Optional[int] = None
    started_at: datetime = Field(sa_type=UTCDateTime)
    completed_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    attempt_number: int = 1
    ip_address: Optional[str] = None
    student_session: Optional[StudentSession] = Relationship(back_populates='attempts')


class Certificate(SQLModel, table=True):
    """A course completion certificate.

    `test_attempt_id` is empty for certificates issued on theory completion.
    """
    __table_args__ = (
        Index(
            'uq_certificate_valid_session',
            'student_session_id',
            unique=True,
            sqlite_where=text('is_valid = 1'),
            postgresql_where=text('is_valid'),
        ),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    student_session_id: int = Field(foreign_key='studentsession.id')
    test_attempt_id: Optional[int] = Field(default=None, foreign_key='testattempt.id')
    certificate_number: str = Field(unique=True)
    verification_code: str = Field(index=True, unique=True)
    issued_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    is_valid: bool = True
