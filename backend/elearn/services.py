"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories and
the pure helpers under `utils`. Services validate input, raise the domain
errors from `errors` before mutating anything, and persist aggregates via
repositories.

The student path is:

    AccessCodeRegistry -> SessionManager -> TestAssembler
        -> ScoringEngine -> AttemptLedger -> CertificateIssuer

with `StudentTestService` wiring the submit flow together. Unique
constraints on the tables are the last line of defence against
concurrent duplicate requests; services treat a violation as "already
done" and return the row that won.
"""

import json
import logging
import random
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import case, distinct, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import auth, models, repositories
from .config import settings
from .errors import (
    AccessCodeRejected,
    AuthError,
    CapacityExceeded,
    ConflictError,
    NotFoundError,
    PolicyViolation,
    ValidationError,
)
from .utils import codes
from .utils.grading import ScoreSummary, grade_submission, validate_question_fields

logger = logging.getLogger("elearn.services")

MAX_CODES_PER_REQUEST = 100


def _log_event(event: str, level: int = logging.INFO, **fields):
    logger.log(level, "%s %s", event, json.dumps(fields, ensure_ascii=True, default=str))


def _today() -> date:
    return models.utcnow().date()


@dataclass
class SessionContext:
    """The access code, course and company a student session belongs to."""
    access_code: models.AccessCode
    course: models.Course
    company: Optional[models.Company]


def load_context(db: Session, student_session: models.StudentSession) -> SessionContext:
    access_code = repositories.AccessCodeRepository(db).get(student_session.access_code_id)
    if not access_code:
        raise NotFoundError("access code not found")
    course = repositories.CourseRepository(db).get(access_code.course_id)
    if not course:
        raise NotFoundError("course not found")
    company = repositories.CompanyRepository(db).get(access_code.company_id) if access_code.company_id else None
    return SessionContext(access_code=access_code, course=course, company=company)


class AuthService:
    """Administrator accounts and logins."""
    def __init__(self, session: Session):
        self.session = session
        self.admin_repo = repositories.AdminRepository(session)
        self.company_admin_repo = repositories.CompanyAdminRepository(session)
        self.company_repo = repositories.CompanyRepository(session)

    def create_admin(self, username: str, password: str, email: Optional[str] = None) -> models.Admin:
        """Create a super-admin with a hashed password."""
        if not username or not password:
            raise ValidationError("username and password required")
        if self.admin_repo.get_by_username(username):
            raise ConflictError(f"admin already exists: {username}")
        admin = models.Admin(username=username, password_hash=auth.hash_password(password), email=email)
        return self.admin_repo.create(admin)

    def create_company_admin(self, company_id: int, username: str, password: str,
                             email: Optional[str] = None, created_by: Optional[int] = None) -> models.CompanyAdmin:
        if not username or not password:
            raise ValidationError("username and password required")
        if not self.company_repo.get(company_id):
            raise NotFoundError("company not found")
        if self.company_admin_repo.get_by_username(username):
            raise ConflictError(f"company admin already exists: {username}")
        company_admin = models.CompanyAdmin(
            username=username,
            password_hash=auth.hash_password(password),
            company_id=company_id,
            email=email,
            created_by=created_by,
        )
        return self.company_admin_repo.create(company_admin)

    def login_admin(self, username: str, password: str) -> Tuple[str, models.Admin]:
        """Verify super-admin credentials and return (token, admin)."""
        admin = self.admin_repo.get_by_username(username)
        if not admin or not admin.is_active or not auth.verify_password(password, admin.password_hash):
            _log_event("admin_login_rejected", logging.WARNING, username=username)
            raise AuthError("invalid credentials")
        admin.last_login = models.utcnow()
        self.admin_repo.save(admin)
        return auth.create_admin_token(admin.id), admin

    def login_company_admin(self, username: str, password: str) -> Tuple[str, models.CompanyAdmin]:
        company_admin = self.company_admin_repo.get_by_username(username)
        if (not company_admin or not company_admin.is_active
                or not auth.verify_password(password, company_admin.password_hash)):
            _log_event("company_admin_login_rejected", logging.WARNING, username=username)
            raise AuthError("invalid credentials")
        company = self.company_repo.get(company_admin.company_id)
        if not company or not company.is_active:
            raise AuthError("company is inactive")
        company_admin.last_login = models.utcnow()
        self.company_admin_repo.save(company_admin)
        return auth.create_company_admin_token(company_admin.id, company_admin.company_id), company_admin


class AccessCodeRegistry:
    """Validate access codes, derive their usage and generate new ones."""
    def __init__(self, session: Session):
        self.session = session
        self.code_repo = repositories.AccessCodeRepository(session)
        self.course_repo = repositories.CourseRepository(session)
        self.company_repo = repositories.CompanyRepository(session)

    def validate(self, code: str) -> models.AccessCode:
        """Return the usable `AccessCode` for `code` or raise `AccessCodeRejected`.

        Expiry is checked independently of capacity; `valid_until` is an
        inclusive date.
        """
        access_code = self.code_repo.get_by_code((code or "").strip())
        if not access_code:
            raise AccessCodeRejected(AccessCodeRejected.NOT_FOUND, "invalid access code")
        course = self.course_repo.get(access_code.course_id)
        if not access_code.is_active or not course or not course.is_active:
            raise AccessCodeRejected(AccessCodeRejected.INACTIVE, "access code is not active")
        if access_code.valid_until < _today():
            raise AccessCodeRejected(AccessCodeRejected.EXPIRED, "access code has expired")
        return access_code

    def active_usage_count(self, access_code_id: int) -> int:
        """Sessions under the code that are still in flight (no valid certificate)."""
        return self.code_repo.count_active_sessions(access_code_id)

    def check_capacity(self, access_code: models.AccessCode) -> bool:
        if access_code.unlimited_participants:
            return True
        limit = access_code.max_participants or 0
        return self.active_usage_count(access_code.id) < limit

    def generate_code(self, course_name: str, taken: Optional[set] = None) -> str:
        """Return a code that is not in the store nor in `taken`."""
        taken = taken if taken is not None else set()
        for _ in range(settings.CODE_GENERATION_RETRIES):
            candidate = codes.generate_course_code(course_name)
            if candidate not in taken and not self.code_repo.code_exists(candidate):
                return candidate
        raise ConflictError("could not generate a unique access code")

    def generate_batch(self, course_id: int, valid_until: date, company_id: Optional[int] = None,
                       max_participants: Optional[int] = None, unlimited_participants: bool = False,
                       theory_to_test: bool = True, quantity: Optional[int] = None,
                       created_by: Optional[int] = None) -> List[models.AccessCode]:
        """Create 1..100 access codes sharing the same settings.

        Without an explicit `quantity` one code is created per participant
        for limited codes and a single code for unlimited ones, capped at
        100. The batch is committed in one transaction.
        """
        course = self.course_repo.get(course_id)
        if not course or not course.is_active:
            raise NotFoundError("course not found")
        if company_id is not None:
            company = self.company_repo.get(company_id)
            if not company or not company.is_active:
                raise NotFoundError("company not found")
        if unlimited_participants and max_participants is not None:
            raise ValidationError("use either unlimited_participants or max_participants, not both")
        if not unlimited_participants and (max_participants is None or max_participants < 1):
            raise ValidationError("max_participants must be >= 1 unless unlimited_participants is set")
        if valid_until < _today():
            raise ValidationError("valid_until must not be in the past")
        if quantity is None:
            quantity = min(max_participants if not unlimited_participants else 1, MAX_CODES_PER_REQUEST)
        elif not 1 <= quantity <= MAX_CODES_PER_REQUEST:
            raise ValidationError(f"quantity must be between 1 and {MAX_CODES_PER_REQUEST}")

        taken: set = set()
        for _ in range(quantity):
            taken.add(self.generate_code(course.name, taken))
        created = []
        for value in sorted(taken):
            access_code = models.AccessCode(
                code=value,
                course_id=course.id,
                company_id=company_id,
                max_participants=None if unlimited_participants else max_participants,
                unlimited_participants=unlimited_participants,
                theory_to_test=theory_to_test,
                valid_until=valid_until,
                created_by=created_by,
            )
            self.session.add(access_code)
            created.append(access_code)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("access code collision, please retry")
        for access_code in created:
            self.session.refresh(access_code)
        _log_event("access_codes_generated", course_id=course.id, company_id=company_id,
                   count=len(created), created_by=created_by)
        return created

    def list_codes(self, company_id: Optional[int] = None) -> List[Tuple[models.AccessCode, int]]:
        """Return (access code, active usage) pairs, newest first."""
        return [(c, self.active_usage_count(c.id)) for c in self.code_repo.list_all(company_id=company_id)]

    def deactivate(self, access_code_id: int, company_id: Optional[int] = None) -> models.AccessCode:
        access_code = self.code_repo.get(access_code_id)
        if not access_code or (company_id is not None and access_code.company_id != company_id):
            raise NotFoundError("access code not found")
        access_code.is_active = False
        return self.code_repo.save(access_code)


class CompletionStatus(str, Enum):
    """Derived progress of a student session."""
    NOT_STARTED = "not_started"
    THEORY_IN_PROGRESS = "theory_in_progress"
    THEORY_COMPLETED = "theory_completed"
    TEST_PENDING = "test_pending"
    TEST_FAILED = "test_failed"
    TEST_PASSED = "test_passed"
    CERTIFIED = "certified"


def completion_status(student_session: models.StudentSession, access_code: models.AccessCode,
                      attempts: List[models.TestAttempt],
                      certificate: Optional[models.Certificate]) -> CompletionStatus:
    """Compute where a session stands; nothing of this is stored."""
    if certificate is not None and certificate.is_valid:
        return CompletionStatus.CERTIFIED
    if any(a.passed for a in attempts):
        return CompletionStatus.TEST_PASSED
    if attempts:
        return CompletionStatus.TEST_FAILED
    if student_session.theory_completed_at is not None:
        if access_code.theory_to_test:
            return CompletionStatus.TEST_PENDING
        return CompletionStatus.THEORY_COMPLETED
    if student_session.theory_started_at is not None:
        return CompletionStatus.THEORY_IN_PROGRESS
    return CompletionStatus.NOT_STARTED


def is_terminal(status: CompletionStatus, attempts_remaining: int) -> bool:
    if status == CompletionStatus.CERTIFIED:
        return True
    return status == CompletionStatus.TEST_FAILED and attempts_remaining <= 0


class CertificateIssuer:
    """Issue, look up and revoke certificates.

    At most one valid certificate exists per session: issuance returns the
    existing one when present, and the partial unique index on the table
    settles concurrent issuance.
    """
    def __init__(self, session: Session):
        self.session = session
        self.cert_repo = repositories.CertificateRepository(session)
        self.attempt_repo = repositories.AttemptRepository(session)

    def _new_identifiers(self, access_code: str) -> Tuple[str, str]:
        now_ms = int(models.utcnow().timestamp() * 1000)
        for i in range(settings.CODE_GENERATION_RETRIES):
            number = codes.generate_certificate_number(access_code, now_ms + i)
            verification = codes.generate_verification_code()
            if not self.cert_repo.number_exists(number) and not self.cert_repo.verification_code_exists(verification):
                return number, verification
        raise ConflictError("could not generate a unique certificate number")

    def _issue(self, student_session: models.StudentSession, access_code: models.AccessCode,
               test_attempt_id: Optional[int]) -> models.Certificate:
        existing = self.cert_repo.get_valid_for_session(student_session.id)
        if existing:
            return existing
        for _ in range(settings.CODE_GENERATION_RETRIES):
            number, verification = self._new_identifiers(access_code.code)
            certificate = models.Certificate(
                student_session_id=student_session.id,
                test_attempt_id=test_attempt_id,
                certificate_number=number,
                verification_code=verification,
            )
            try:
                certificate = self.cert_repo.create(certificate)
            except IntegrityError:
                self.session.rollback()
                existing = self.cert_repo.get_valid_for_session(student_session.id)
                if existing is not None:
                    _log_event("certificate_issue_raced", session_id=student_session.id,
                               certificate_id=existing.id)
                    return existing
                # another session took the same number or verification code
                _log_event("certificate_identifier_collision", logging.WARNING,
                           session_id=student_session.id, certificate_number=number)
                continue
            _log_event("certificate_issued", session_id=student_session.id, certificate_id=certificate.id,
                       test_attempt_id=test_attempt_id, certificate_number=number)
            return certificate
        raise ConflictError("could not generate a unique certificate number")

    def issue_for_attempt(self, student_session: models.StudentSession,
                          attempt: models.TestAttempt) -> models.Certificate:
        if not attempt.passed:
            raise PolicyViolation("certificates are only issued for passed attempts")
        access_code = load_context(self.session, student_session).access_code
        return self._issue(student_session, access_code, attempt.id)

    def issue_theory_only(self, student_session: models.StudentSession) -> models.Certificate:
        access_code = load_context(self.session, student_session).access_code
        if access_code.theory_to_test:
            raise PolicyViolation("this course requires passing the test")
        if student_session.theory_completed_at is None:
            raise PolicyViolation("theory is not completed")
        return self._issue(student_session, access_code, None)

    def ensure_for_session(self, student_session: models.StudentSession) -> Optional[models.Certificate]:
        """Return the session's certificate, issuing it if it is owed but missing.

        A certificate is owed for a passed attempt (or a completed
        theory-only session) that never got one; revoked certificates are
        not re-issued.
        """
        existing = self.cert_repo.get_valid_for_session(student_session.id)
        if existing:
            return existing
        issued = self.cert_repo.list_for_session(student_session.id)
        passed = self.attempt_repo.latest_passed(student_session.id)
        if passed:
            if any(c.test_attempt_id == passed.id for c in issued):
                return None
            return self.issue_for_attempt(student_session, passed)
        access_code = load_context(self.session, student_session).access_code
        if not access_code.theory_to_test and student_session.theory_completed_at is not None:
            if any(c.test_attempt_id is None for c in issued):
                return None
            return self.issue_theory_only(student_session)
        return None

    def verify(self, verification_code: str) -> Dict[str, Any]:
        """Public certificate lookup by verification code."""
        certificate = self.cert_repo.get_by_verification_code(verification_code)
        if not certificate:
            raise NotFoundError("certificate not found or invalid")
        student_session = repositories.StudentSessionRepository(self.session).get(certificate.student_session_id)
        if not student_session:
            raise NotFoundError("certificate not found or invalid")
        ctx = load_context(self.session, student_session)
        return {
            'valid': bool(certificate.is_valid),
            'certificate': certificate,
            'student': {'name': student_session.student_name},
            'course': ctx.course.name,
            'company': ctx.company.name if ctx.company else None,
            'issued_at': certificate.issued_at,
        }

    def revoke(self, certificate_id: int) -> models.Certificate:
        certificate = self.cert_repo.get(certificate_id)
        if not certificate:
            raise NotFoundError("certificate not found")
        certificate.is_valid = False
        certificate = self.cert_repo.save(certificate)
        _log_event("certificate_revoked", certificate_id=certificate.id)
        return certificate


class AttemptLedger:
    """Enforce the attempt limit and append graded attempts."""
    def __init__(self, session: Session):
        self.session = session
        self.attempt_repo = repositories.AttemptRepository(session)

    def history(self, session_id: int) -> List[models.TestAttempt]:
        return self.attempt_repo.list_for_session(session_id)

    def attempts_remaining(self, course: models.Course, attempts_used: int) -> int:
        return max(0, course.max_attempts - attempts_used)

    def next_attempt_number(self, student_session: models.StudentSession, course: models.Course) -> int:
        """Return the next attempt number or raise `PolicyViolation` when none is left."""
        number = self.attempt_repo.count_for_session(student_session.id) + 1
        if number > course.max_attempts:
            _log_event("attempt_rejected", logging.WARNING, session_id=student_session.id,
                       attempt_number=number, max_attempts=course.max_attempts)
            raise PolicyViolation("maximum attempts exceeded")
        return number

    def record_attempt(self, student_session: models.StudentSession, course: models.Course,
                       answers: Mapping[str, Any], summary: ScoreSummary, time_taken_seconds: int,
                       ip_address: Optional[str] = None) -> Tuple[models.TestAttempt, int]:
        """Persist a graded attempt; return (attempt, attempts remaining).

        Nothing is written when the attempt limit is reached. If another
        request stored the same attempt number first, that attempt is
        returned instead. The start time comes from the server-side test
        clock when one is running, and the clock is closed with the attempt.
        """
        number = self.next_attempt_number(student_session, course)
        now = models.utcnow()
        started_at = student_session.test_started_at
        if started_at is None or started_at > now:
            started_at = now - timedelta(seconds=time_taken_seconds)
        attempt = models.TestAttempt(
            student_session_id=student_session.id,
            answers=dict(answers),
            answer_details=[item.as_dict() for item in summary.items],
            score=summary.score,
            max_score=summary.max_score,
            percentage=summary.percentage,
            passed=summary.passed,
            time_taken_seconds=time_taken_seconds,
            started_at=started_at,
            completed_at=now,
            attempt_number=number,
            ip_address=ip_address,
        )
        student_session.test_started_at = None
        self.session.add(student_session)
        try:
            attempt = self.attempt_repo.create(attempt)
        except IntegrityError:
            self.session.rollback()
            existing = self.attempt_repo.get_by_number(student_session.id, number)
            if existing is None:
                raise
            _log_event("attempt_duplicate", session_id=student_session.id, attempt_number=number)
            return existing, self.attempts_remaining(course, number)
        _log_event("attempt_recorded", session_id=student_session.id, attempt_id=attempt.id,
                   attempt_number=number, score=attempt.score, max_score=attempt.max_score,
                   passed=attempt.passed)
        return attempt, self.attempts_remaining(course, number)


@dataclass
class PresentedQuestion:
    """A question as shown to a student: no answer key, shuffled options."""
    id: int
    question_text: str
    question_type: str
    options: List[str]
    points: int
    media_url: Optional[str] = None


class TestAssembler:
    """Build randomized tests from a course's active questions."""

    def __init__(self, session: Session, rng: Optional[random.Random] = None):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)
        self.rng = rng or random.Random()

    def build_test(self, course: models.Course) -> List[PresentedQuestion]:
        """Shuffle the course's questions, cap them and shuffle each one's options."""
        questions = list(self.q_repo.list_for_course(course.id))
        self.rng.shuffle(questions)
        cap = course.max_questions_in_test
        if cap and cap > 0:
            questions = questions[:cap]
        out = []
        for q in questions:
            options = list(q.options or [])
            self.rng.shuffle(options)
            out.append(PresentedQuestion(
                id=q.id,
                question_text=q.question_text,
                question_type=q.question_type,
                options=options,
                points=q.points or 1,
                media_url=q.media_url,
            ))
        return out


@dataclass
class ScoredResult:
    summary: ScoreSummary
    answers: Dict[str, Any] = field(default_factory=dict)


class ScoringEngine:
    """Grade submissions against canonical questions fetched by id."""
    def __init__(self, session: Session):
        self.session = session
        self.q_repo = repositories.QuestionRepository(session)

    @staticmethod
    def parse_answers(answers: Mapping[Any, Any]) -> Dict[int, Any]:
        parsed = {}
        for key, value in (answers or {}).items():
            try:
                parsed[int(key)] = value
            except (TypeError, ValueError):
                raise ValidationError(f"invalid question id: {key}")
        return parsed

    def score(self, course: models.Course, answers: Mapping[Any, Any]) -> ScoredResult:
        """Grade the answered questions only; unanswered ones do not count.

        Every answered id must be an active question of `course`.
        """
        parsed = self.parse_answers(answers)
        if not parsed:
            raise ValidationError("no answers submitted")
        questions = self.q_repo.list_active_by_ids(course.id, parsed.keys())
        unknown = sorted(set(parsed) - {q.id for q in questions})
        if unknown:
            raise ValidationError(f"unknown question ids: {', '.join(str(i) for i in unknown)}")
        summary = grade_submission(questions, parsed, course.passing_score)
        return ScoredResult(summary=summary, answers={str(k): v for k, v in parsed.items()})

    def credited_time(self, student_session: models.StudentSession, course: models.Course,
                      client_seconds: Optional[int], now: Optional[datetime] = None) -> int:
        """Time to record for an attempt, checked against the course time limit.

        A submission later than limit + grace after the test was served is
        rejected; otherwise the client figure is capped by the server-side
        elapsed time and by the limit.
        """
        seconds = max(0, int(client_seconds or 0))
        if not course.time_limit_minutes:
            return seconds
        limit = course.time_limit_minutes * 60
        if student_session.test_started_at is not None:
            now = now or models.utcnow()
            elapsed = (now - student_session.test_started_at).total_seconds()
            if elapsed > limit + settings.TIME_LIMIT_GRACE_SECONDS:
                _log_event("late_submission_rejected", logging.WARNING, session_id=student_session.id,
                           elapsed_seconds=int(elapsed), limit_seconds=limit)
                raise PolicyViolation("time limit exceeded")
            seconds = min(seconds, int(elapsed))
        return min(seconds, limit)


@dataclass
class SubmissionResult:
    attempt: models.TestAttempt
    certificate: Optional[models.Certificate]
    questions_count: int
    attempts_remaining: int


class SessionManager:
    """Student login and theory progress."""
    def __init__(self, session: Session):
        self.session = session
        self.registry = AccessCodeRegistry(session)
        self.session_repo = repositories.StudentSessionRepository(session)
        self.slide_repo = repositories.TheorySlideRepository(session)

    def login(self, name: str, email: str, code: str, ip_address: Optional[str] = None,
              user_agent: Optional[str] = None) -> Tuple[models.StudentSession, str]:
        """Resolve or create the session for (name, email, code); return (session, token).

        Logging in again with the same triple returns the same session,
        even when the code is at capacity (that session is already counted).
        """
        name = (name or "").strip()
        email = (email or "").strip()
        if not name or not email or not (code or "").strip():
            raise ValidationError("student_name, student_email and access_code are required")
        try:
            access_code = self.registry.validate(code)
        except AccessCodeRejected as exc:
            _log_event("student_login_rejected", logging.WARNING, reason=exc.reason)
            raise
        student_session = self.session_repo.get_by_identity(name, email, access_code.id)
        if student_session is None:
            if not self.registry.check_capacity(access_code):
                _log_event("student_login_rejected", logging.WARNING, reason="capacity",
                           access_code_id=access_code.id)
                raise CapacityExceeded("maximum participants currently active for this code")
            student_session = self._create(access_code, name, email, ip_address, user_agent)
        _log_event("student_login", session_id=student_session.id, access_code_id=access_code.id)
        return student_session, auth.create_student_token(student_session.id)

    def _create(self, access_code: models.AccessCode, name: str, email: str,
                ip_address: Optional[str], user_agent: Optional[str]) -> models.StudentSession:
        student_session = models.StudentSession(
            access_code_id=access_code.id,
            student_name=name,
            student_email=email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            return self.session_repo.create(student_session)
        except IntegrityError:
            self.session.rollback()
            existing = self.session_repo.get_by_identity(name, email, access_code.id)
            if existing is None:
                raise
            return existing

    def get(self, session_id: int) -> models.StudentSession:
        student_session = self.session_repo.get(session_id)
        if not student_session:
            raise NotFoundError("session not found")
        return student_session

    def mark_theory_started(self, student_session: models.StudentSession) -> models.StudentSession:
        if student_session.theory_started_at is None:
            student_session.theory_started_at = models.utcnow()
            self.session_repo.save(student_session)
        return student_session

    def theory(self, student_session: models.StudentSession) -> List[models.TheorySlide]:
        """Return the course slides and mark theory as started."""
        ctx = load_context(self.session, student_session)
        self.mark_theory_started(student_session)
        return self.slide_repo.list_for_course(ctx.course.id)

    def complete_theory(self, student_session: models.StudentSession) -> Tuple[bool, Optional[models.Certificate]]:
        """Mark theory as completed; return (theory_to_test, certificate).

        For theory-only access codes the certificate is issued right away.
        Repeated calls keep the first completion time and never issue a
        second certificate.
        """
        ctx = load_context(self.session, student_session)
        if student_session.theory_completed_at is None:
            now = models.utcnow()
            student_session.theory_started_at = student_session.theory_started_at or now
            student_session.theory_completed_at = now
            self.session_repo.save(student_session)
            _log_event("theory_completed", session_id=student_session.id)
        certificate = None
        if not ctx.access_code.theory_to_test:
            certificate = CertificateIssuer(self.session).ensure_for_session(student_session)
        return ctx.access_code.theory_to_test, certificate

    def progress(self, student_session: models.StudentSession) -> Dict[str, Any]:
        ctx = load_context(self.session, student_session)
        ledger = AttemptLedger(self.session)
        attempts = ledger.history(student_session.id)
        certificate = repositories.CertificateRepository(self.session).get_valid_for_session(student_session.id)
        status = completion_status(student_session, ctx.access_code, attempts, certificate)
        remaining = ledger.attempts_remaining(ctx.course, len(attempts))
        return {
            'session': student_session,
            'course': ctx.course,
            'company': ctx.company,
            'access_code': ctx.access_code,
            'attempts': attempts,
            'theory_completed': student_session.theory_completed_at is not None,
            'test_completed': bool(attempts),
            'passed': any(a.passed for a in attempts),
            'status': status.value,
            'is_terminal': is_terminal(status, remaining),
            'attempts_remaining': remaining,
            'certificate': certificate,
        }


class StudentTestService:
    """Serve tests to a student and process submissions end to end."""
    def __init__(self, session: Session, rng: Optional[random.Random] = None):
        self.session = session
        self.assembler = TestAssembler(session, rng=rng)
        self.engine = ScoringEngine(session)
        self.ledger = AttemptLedger(session)
        self.issuer = CertificateIssuer(session)
        self.session_repo = repositories.StudentSessionRepository(session)
        self.cert_repo = repositories.CertificateRepository(session)

    def _check_can_take_test(self, student_session: models.StudentSession, ctx: SessionContext):
        if self.cert_repo.get_valid_for_session(student_session.id):
            raise PolicyViolation("course already completed")
        if settings.REQUIRE_THEORY_BEFORE_TEST and student_session.theory_completed_at is None:
            raise PolicyViolation("theory must be completed before the test")
        self.ledger.next_attempt_number(student_session, ctx.course)

    def start_test(self, student_session: models.StudentSession) -> List[PresentedQuestion]:
        """Return a freshly shuffled test and start the server-side clock.

        Fetching the test again while an attempt is open keeps the original
        start time. The clock is cleared when an attempt is recorded or a
        late submission is rejected.
        """
        ctx = load_context(self.session, student_session)
        self._check_can_take_test(student_session, ctx)
        questions = self.assembler.build_test(ctx.course)
        if not questions:
            raise NotFoundError("no questions available")
        if student_session.test_started_at is None:
            student_session.test_started_at = models.utcnow()
            self.session_repo.save(student_session)
        return questions

    def submit(self, student_session: models.StudentSession, answers: Mapping[Any, Any],
               time_taken_seconds: Optional[int], ip_address: Optional[str] = None) -> SubmissionResult:
        """Grade, record and (when passed) certify one submission.

        All checks run before the attempt is written. A failure while
        issuing the certificate leaves the recorded attempt in place; the
        certificate is issued later by `CertificateIssuer.ensure_for_session`.
        """
        ctx = load_context(self.session, student_session)
        self._check_can_take_test(student_session, ctx)
        try:
            credited = self.engine.credited_time(student_session, ctx.course, time_taken_seconds)
        except PolicyViolation:
            student_session.test_started_at = None
            self.session_repo.save(student_session)
            raise
        scored = self.engine.score(ctx.course, answers)
        attempt, remaining = self.ledger.record_attempt(
            student_session, ctx.course, scored.answers, scored.summary, credited, ip_address)
        certificate = None
        if attempt.passed:
            try:
                certificate = self.issuer.issue_for_attempt(student_session, attempt)
            except Exception:
                self.session.rollback()
                logger.exception("certificate issuance failed for session %s attempt %s",
                                 student_session.id, attempt.id)
        return SubmissionResult(
            attempt=attempt,
            certificate=certificate,
            questions_count=len(attempt.answer_details),
            attempts_remaining=remaining,
        )

    def certificate_view(self, student_session: models.StudentSession) -> Dict[str, Any]:
        certificate = self.issuer.ensure_for_session(student_session)
        if not certificate:
            raise NotFoundError("certificate not found")
        ctx = load_context(self.session, student_session)
        return {
            'certificate': certificate,
            'course': ctx.course,
            'company': ctx.company,
            'student': {'name': student_session.student_name, 'email': student_session.student_email},
        }


def slugify(value: str) -> str:
    normalized = unicodedata.normalize('NFKD', value).encode('ascii', 'ignore').decode('ascii')
    slug = re.sub(r'[^a-z0-9]+', '-', normalized.lower()).strip('-')
    return slug or 'course'


class CatalogService:
    """Admin management of courses, companies, theory slides and questions."""
    COURSE_FIELDS = ('name', 'slug', 'abbreviation', 'description', 'passing_score',
                     'time_limit_minutes', 'max_attempts', 'max_questions_in_test')
    NULLABLE_COURSE_FIELDS = ('abbreviation', 'description', 'time_limit_minutes', 'max_questions_in_test')
    SLIDE_FIELDS = ('title', 'content', 'slide_order', 'media_urls', 'estimated_read_time')
    QUESTION_FIELDS = ('question_text', 'question_type', 'options', 'correct_answers', 'explanation',
                       'media_url', 'points', 'difficulty_level', 'question_order')

    def __init__(self, session: Session):
        self.session = session
        self.course_repo = repositories.CourseRepository(session)
        self.company_repo = repositories.CompanyRepository(session)
        self.code_repo = repositories.AccessCodeRepository(session)
        self.slide_repo = repositories.TheorySlideRepository(session)
        self.q_repo = repositories.QuestionRepository(session)

    # courses

    def get_course(self, course_id: int) -> models.Course:
        course = self.course_repo.get(course_id)
        if not course or not course.is_active:
            raise NotFoundError("course not found")
        return course

    def list_courses(self) -> List[models.Course]:
        return self.course_repo.list_active()

    def _validate_course(self, course: models.Course):
        if not course.name or not course.name.strip():
            raise ValidationError("course name is required")
        if not 0 <= course.passing_score <= 100:
            raise ValidationError("passing_score must be between 0 and 100")
        if course.max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")
        if course.time_limit_minutes is not None and course.time_limit_minutes < 1:
            raise ValidationError("time_limit_minutes must be >= 1")
        if course.max_questions_in_test is not None and course.max_questions_in_test < 0:
            raise ValidationError("max_questions_in_test must be >= 0")

    def _unique_slug(self, base: str, course_id: Optional[int] = None) -> str:
        slug = base
        n = 2
        while True:
            existing = self.course_repo.get_by_slug(slug)
            if not existing or existing.id == course_id:
                return slug
            slug = f"{base}-{n}"
            n += 1

    def create_course(self, data: Mapping[str, Any]) -> models.Course:
        values = {k: v for k, v in data.items() if k in self.COURSE_FIELDS and v is not None}
        course = models.Course(**values)
        self._validate_course(course)
        course.slug = self._unique_slug(slugify(values.get('slug') or course.name))
        course.abbreviation = course.abbreviation or codes.course_prefix(course.name)
        return self.course_repo.create(course)

    def update_course(self, course_id: int, data: Mapping[str, Any]) -> models.Course:
        course = self.get_course(course_id)
        slug = slugify(data['slug']) if data.get('slug') else None
        if slug:
            existing = self.course_repo.get_by_slug(slug)
            if existing and existing.id != course.id:
                raise ConflictError(f"slug already in use: {slug}")
        for key, value in data.items():
            if key not in self.COURSE_FIELDS or key == 'slug':
                continue
            if value is None and key not in self.NULLABLE_COURSE_FIELDS:
                continue
            setattr(course, key, value)
        self._validate_course(course)
        if slug:
            course.slug = slug
        course.updated_at = models.utcnow()
        return self.course_repo.save(course)

    def delete_course(self, course_id: int) -> None:
        """Soft-delete a course with its access codes, slides and questions."""
        course = self.get_course(course_id)
        now = models.utcnow()
        course.is_active = False
        course.updated_at = now
        self.session.add(course)
        for access_code in self.code_repo.list_for_course(course.id):
            access_code.is_active = False
            self.session.add(access_code)
        for slide in self.slide_repo.list_for_course(course.id):
            slide.is_active = False
            slide.updated_at = now
            self.session.add(slide)
        for question in self.q_repo.list_for_course(course.id):
            question.is_active = False
            question.updated_at = now
            self.session.add(question)
        self.session.commit()
        _log_event("course_deleted", course_id=course.id)

    # companies

    def list_companies(self) -> List[models.Company]:
        return self.company_repo.list_active()

    def create_company(self, data: Mapping[str, Any]) -> models.Company:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError("company name is required")
        company = models.Company(
            name=name,
            contact_email=data.get('contact_email'),
            contact_phone=data.get('contact_phone'),
            address=data.get('address'),
        )
        return self.company_repo.create(company)

    # theory slides

    def list_slides(self, course_id: int) -> List[models.TheorySlide]:
        self.get_course(course_id)
        return self.slide_repo.list_for_course(course_id)

    def create_slide(self, course_id: int, data: Mapping[str, Any]) -> models.TheorySlide:
        self.get_course(course_id)
        values = {k: v for k, v in data.items() if k in self.SLIDE_FIELDS and v is not None}
        if 'slide_order' not in values:
            values['slide_order'] = len(self.slide_repo.list_for_course(course_id, include_inactive=True)) + 1
        slide = models.TheorySlide(course_id=course_id, **values)
        return self.slide_repo.create(slide)

    def update_slide(self, slide_id: int, data: Mapping[str, Any]) -> models.TheorySlide:
        slide = self.slide_repo.get(slide_id)
        if not slide or not slide.is_active:
            raise NotFoundError("slide not found")
        for key, value in data.items():
            if key in self.SLIDE_FIELDS and value is not None:
                setattr(slide, key, value)
        slide.updated_at = models.utcnow()
        return self.slide_repo.save(slide)

    def delete_slide(self, slide_id: int) -> None:
        slide = self.slide_repo.get(slide_id)
        if not slide or not slide.is_active:
            raise NotFoundError("slide not found")
        slide.is_active = False
        slide.updated_at = models.utcnow()
        self.slide_repo.save(slide)

    # questions

    def list_questions(self, course_id: int) -> List[models.TestQuestion]:
        self.get_course(course_id)
        return self.q_repo.list_for_course(course_id)

    def create_question(self, course_id: int, data: Mapping[str, Any]) -> models.TestQuestion:
        self.get_course(course_id)
        values = {k: v for k, v in data.items() if k in self.QUESTION_FIELDS and v is not None}
        values.setdefault('question_type', models.SINGLE_CHOICE)
        values.setdefault('points', 1)
        if not (values.get('question_text') or '').strip():
            raise ValidationError("question_text is required")
        validate_question_fields(values['question_type'], values.get('options'),
                                 values.get('correct_answers'), values['points'])
        if 'question_order' not in values:
            values['question_order'] = len(self.q_repo.list_for_course(course_id, include_inactive=True)) + 1
        question = models.TestQuestion(course_id=course_id, **values)
        return self.q_repo.create(question)

    def update_question(self, question_id: int, data: Mapping[str, Any]) -> models.TestQuestion:
        """Apply a partial update; the merged question must still be valid."""
        question = self.q_repo.get(question_id)
        if not question or not question.is_active:
            raise NotFoundError("question not found")
        merged = {k: getattr(question, k) for k in self.QUESTION_FIELDS}
        merged.update({k: v for k, v in data.items() if k in self.QUESTION_FIELDS and v is not None})
        if not (merged.get('question_text') or '').strip():
            raise ValidationError("question_text is required")
        validate_question_fields(merged['question_type'], merged['options'],
                                 merged['correct_answers'], merged['points'])
        for key, value in merged.items():
            setattr(question, key, value)
        question.updated_at = models.utcnow()
        return self.q_repo.save(question)

    def delete_question(self, question_id: int) -> None:
        question = self.q_repo.get(question_id)
        if not question or not question.is_active:
            raise NotFoundError("question not found")
        question.is_active = False
        question.updated_at = models.utcnow()
        self.q_repo.save(question)


class AnalyticsService:
    """Aggregate figures for the admin dashboard."""
    def __init__(self, session: Session):
        self.session = session

    def _count(self, stmt) -> int:
        return self.session.exec(stmt).one() or 0

    def summary(self) -> Dict[str, Any]:
        active_codes = self._count(select(func.count(models.AccessCode.id)).where(
            models.AccessCode.is_active == True,  # noqa: E712
            models.AccessCode.valid_until >= _today(),
        ))
        total_completions = self._count(select(func.count(models.Certificate.id)).where(
            models.Certificate.is_valid == True,  # noqa: E712
        ))
        has_valid_certificate = select(models.Certificate.id).where(
            models.Certificate.student_session_id == models.StudentSession.id,
            models.Certificate.is_valid == True,  # noqa: E712
        ).exists()
        in_progress = self._count(select(func.count(models.StudentSession.id)).where(
            models.StudentSession.theory_completed_at != None,  # noqa: E711
            ~has_valid_certificate,
        ))
        total_attempts = self._count(select(func.count(models.TestAttempt.id)))
        passed_attempts = self._count(select(func.count(models.TestAttempt.id)).where(
            models.TestAttempt.passed == True,  # noqa: E712
        ))
        success_rate = round(passed_attempts / total_attempts * 100) if total_attempts else 0
        return {
            'active_codes': active_codes,
            'total_completions': total_completions,
            'in_progress': in_progress,
            'success_rate': success_rate,
            'popular_courses': self._popular_courses(),
            'company_performance': self._company_performance(),
        }

    def _popular_courses(self, limit: int = 5) -> List[Dict[str, Any]]:
        completions = func.count(models.Certificate.id)
        stmt = (
            select(models.Course.name, completions)
            .select_from(models.Certificate)
            .join(models.StudentSession, models.Certificate.student_session_id == models.StudentSession.id)
            .join(models.AccessCode, models.StudentSession.access_code_id == models.AccessCode.id)
            .join(models.Course, models.AccessCode.course_id == models.Course.id)
            .where(models.Certificate.is_valid == True)  # noqa: E712
            .group_by(models.Course.id, models.Course.name)
            .order_by(completions.desc())
            .limit(limit)
        )
        rows = self.session.exec(stmt).all()
        top = max([count for _, count in rows] + [1])
        return [{'name': name, 'completions': count, 'percentage': round(count / top * 100)}
                for name, count in rows]

    def _company_performance(self, limit: int = 5) -> List[Dict[str, Any]]:
        employees = func.count(distinct(models.StudentSession.student_email))
        stmt = (
            select(
                models.Company.name,
                employees,
                func.count(models.TestAttempt.id),
                func.sum(case((models.TestAttempt.passed == True, 1), else_=0)),  # noqa: E712
            )
            .select_from(models.Company)
            .join(models.AccessCode, models.AccessCode.company_id == models.Company.id)
            .join(models.StudentSession, models.StudentSession.access_code_id == models.AccessCode.id)
            .outerjoin(models.TestAttempt, models.TestAttempt.student_session_id == models.StudentSession.id)
            .group_by(models.Company.id, models.Company.name)
            .order_by(employees.desc())
            .limit(limit)
        )
        out = []
        for name, trained, attempts, passed in self.session.exec(stmt).all():
            passed = passed or 0
            out.append({
                'name': name,
                'employees_trained': trained,
                'success_rate': round(passed / attempts * 100) if attempts else 0,
            })
        return out
