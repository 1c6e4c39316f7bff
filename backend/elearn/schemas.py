"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. `*Update` models are partial: only the
fields a client sends are applied.
"""

from datetime import date
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field


class AdminLoginIn(BaseModel):
    """Payload for the admin and company admin login endpoints."""
    username: str
    password: str


class StudentLoginIn(BaseModel):
    """Payload for student login with a shared access code."""
    student_name: str = Field(min_length=1)
    student_email: str = Field(min_length=3)
    access_code: str = Field(min_length=1)


class CourseIn(BaseModel):
    name: str = Field(min_length=1)
    slug: Optional[str] = None
    abbreviation: Optional[str] = None
    description: Optional[str] = None
    passing_score: int = Field(default=80, ge=0, le=100)
    time_limit_minutes: Optional[int] = Field(default=None, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    max_questions_in_test: Optional[int] = Field(default=None, ge=0)


class CourseUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    abbreviation: Optional[str] = None
    description: Optional[str] = None
    passing_score: Optional[int] = Field(default=None, ge=0, le=100)
    time_limit_minutes: Optional[int] = Field(default=None, ge=1)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    max_questions_in_test: Optional[int] = Field(default=None, ge=0)


class CompanyIn(BaseModel):
    name: str = Field(min_length=1)
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None


class CompanyAdminIn(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=6)
    email: Optional[str] = None


class AccessCodeIn(BaseModel):
    """Request to generate a batch of access codes for one course.

    Exactly one of `max_participants` and `unlimited_participants` must be
    given; the service enforces it.
    """
    course_id: int
    company_id: Optional[int] = None
    max_participants: Optional[int] = None
    unlimited_participants: bool = False
    theory_to_test: bool = True
    valid_until: date
    quantity: Optional[int] = None


class TheorySlideIn(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    slide_order: Optional[int] = Field(default=None, ge=1)
    media_urls: List[str] = Field(default_factory=list)
    estimated_read_time: int = Field(default=2, ge=1)


class TheorySlideUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    slide_order: Optional[int] = Field(default=None, ge=1)
    media_urls: Optional[List[str]] = None
    estimated_read_time: Optional[int] = Field(default=None, ge=1)


class QuestionIn(BaseModel):
    """Request format for creating a single test question.

    `correct_answers` is a string for `single_choice` and a list of
    strings for `multiple_choice`.
    """
    question_text: str
    question_type: str = "single_choice"
    options: List[str]
    correct_answers: Union[str, List[str]]
    explanation: Optional[str] = None
    media_url: Optional[str] = None
    points: int = 1
    difficulty_level: str = "medium"
    question_order: Optional[int] = None


class QuestionUpdate(BaseModel):
    question_text: Optional[str] = None
    question_type: Optional[str] = None
    options: Optional[List[str]] = None
    correct_answers: Optional[Union[str, List[str]]] = None
    explanation: Optional[str] = None
    media_url: Optional[str] = None
    points: Optional[int] = None
    difficulty_level: Optional[str] = None
    question_order: Optional[int] = None


class SubmissionIn(BaseModel):
    """A test submission: question id (as string) -> selected option(s)."""
    answers: Dict[str, Union[str, List[str]]]
    time_taken_seconds: Optional[int] = Field(default=None, ge=0)
