"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (admins,
courses, access codes, sessions, attempts, certificates). Repositories
return SQLModel objects and perform commits/refreshes where appropriate;
integrity errors from unique constraints propagate to the services, which
decide how to recover.
"""

from typing import Iterable, List, Optional
from sqlmodel import Session, col, select
from sqlalchemy import func
from . import models


class _Repository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, obj):
        """Persist changes on a managed instance and return it refreshed."""
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    create = save


class AdminRepository(_Repository):
    """CRUD operations for super-admin `Admin` rows."""

    def get(self, admin_id: int) -> Optional[models.Admin]:
        return self.session.get(models.Admin, admin_id)

    def get_by_username(self, username: str) -> Optional[models.Admin]:
        stmt = select(models.Admin).where(models.Admin.username == username)
        return self.session.exec(stmt).first()


class CompanyAdminRepository(_Repository):
    def get(self, company_admin_id: int) -> Optional[models.CompanyAdmin]:
        return self.session.get(models.CompanyAdmin, company_admin_id)

    def get_by_username(self, username: str) -> Optional[models.CompanyAdmin]:
        stmt = select(models.CompanyAdmin).where(models.CompanyAdmin.username == username)
        return self.session.exec(stmt).first()


class CompanyRepository(_Repository):
    def get(self, company_id: int) -> Optional[models.Company]:
        return self.session.get(models.Company, company_id)

    def list_active(self) -> List[models.Company]:
        stmt = select(models.Company).where(models.Company.is_active == True).order_by(models.Company.name)  # noqa: E712
        return self.session.exec(stmt).all()


class CourseRepository(_Repository):
    def get(self, course_id: int) -> Optional[models.Course]:
        return self.session.get(models.Course, course_id)

    def get_by_slug(self, slug: str) -> Optional[models.Course]:
        stmt = select(models.Course).where(models.Course.slug == slug)
        return self.session.exec(stmt).first()

    def list_active(self) -> List[models.Course]:
        stmt = select(models.Course).where(models.Course.is_active == True).order_by(models.Course.id)  # noqa: E712
        return self.session.exec(stmt).all()


class AccessCodeRepository(_Repository):
    """Lookups and derived usage counts for `AccessCode` rows."""

    def get(self, access_code_id: int) -> Optional[models.AccessCode]:
        return self.session.get(models.AccessCode, access_code_id)

    def get_by_code(self, code: str) -> Optional[models.AccessCode]:
        stmt = select(models.AccessCode).where(models.AccessCode.code == code)
        return self.session.exec(stmt).first()

    def code_exists(self, code: str) -> bool:
        stmt = select(models.AccessCode.id).where(models.AccessCode.code == code)
        return self.session.exec(stmt).first() is not None

    def list_all(self, company_id: Optional[int] = None, include_inactive: bool = False) -> List[models.AccessCode]:
        """Return access codes newest first, optionally limited to a company."""
        stmt = select(models.AccessCode)
        if company_id is not None:
            stmt = stmt.where(models.AccessCode.company_id == company_id)
        if not include_inactive:
            stmt = stmt.where(models.AccessCode.is_active == True)  # noqa: E712
        stmt = stmt.order_by(col(models.AccessCode.created_at).desc(), col(models.AccessCode.id).desc())
        return self.session.exec(stmt).all()

    def list_for_course(self, course_id: int) -> List[models.AccessCode]:
        stmt = select(models.AccessCode).where(models.AccessCode.course_id == course_id)
        return self.session.exec(stmt).all()

    def count_active_sessions(self, access_code_id: int) -> int:
        """Count sessions under the code that hold no valid certificate."""
        has_valid_certificate = select(models.Certificate.id).where(
            models.Certificate.student_session_id == models.StudentSession.id,
            models.Certificate.is_valid == True,  # noqa: E712
        ).exists()
        stmt = select(func.count(models.StudentSession.id)).where(
            models.StudentSession.access_code_id == access_code_id,
            ~has_valid_certificate,
        )
        return self.session.exec(stmt).one()


class TheorySlideRepository(_Repository):
    def get(self, slide_id: int) -> Optional[models.TheorySlide]:
        return self.session.get(models.TheorySlide, slide_id)

    def list_for_course(self, course_id: int, include_inactive: bool = False) -> List[models.TheorySlide]:
        stmt = select(models.TheorySlide).where(models.TheorySlide.course_id == course_id)
        if not include_inactive:
            stmt = stmt.where(models.TheorySlide.is_active == True)  # noqa: E712
        stmt = stmt.order_by(models.TheorySlide.slide_order, models.TheorySlide.id)
        return self.session.exec(stmt).all()


class QuestionRepository(_Repository):
    """Queries for `TestQuestion` rows."""

    def get(self, question_id: int) -> Optional[models.TestQuestion]:
        return self.session.get(models.TestQuestion, question_id)

    def list_for_course(self, course_id: int, include_inactive: bool = False) -> List[models.TestQuestion]:
        """Return the course's questions ordered by `question_order`."""
        stmt = select(models.TestQuestion).where(models.TestQuestion.course_id == course_id)
        if not include_inactive:
            stmt = stmt.where(models.TestQuestion.is_active == True)  # noqa: E712
        stmt = stmt.order_by(models.TestQuestion.question_order, models.TestQuestion.id)
        return self.session.exec(stmt).all()

    def list_active_by_ids(self, course_id: int, question_ids: Iterable[int]) -> List[models.TestQuestion]:
        """Fetch canonical active questions of `course_id` among `question_ids`."""
        ids = list(question_ids)
        if not ids:
            return []
        stmt = select(models.TestQuestion).where(
            models.TestQuestion.course_id == course_id,
            models.TestQuestion.is_active == True,  # noqa: E712
            col(models.TestQuestion.id).in_(ids),
        ).order_by(models.TestQuestion.question_order, models.TestQuestion.id)
        return self.session.exec(stmt).all()


class StudentSessionRepository(_Repository):
    def get(self, session_id: int) -> Optional[models.StudentSession]:
        return self.session.get(models.StudentSession, session_id)

    def get_by_identity(self, name: str, email: str, access_code_id: int) -> Optional[models.StudentSession]:
        """Return the session for a (name, email, access code) triple."""
        stmt = select(models.StudentSession).where(
            models.StudentSession.student_name == name,
            models.StudentSession.student_email == email,
            models.StudentSession.access_code_id == access_code_id,
        )
        return self.session.exec(stmt).first()


class AttemptRepository(_Repository):
    """Append-only access to `TestAttempt` rows."""

    def list_for_session(self, session_id: int) -> List[models.TestAttempt]:
        """Attempts of a session, most recent first."""
        stmt = select(models.TestAttempt).where(
            models.TestAttempt.student_session_id == session_id
        ).order_by(col(models.TestAttempt.started_at).desc(), col(models.TestAttempt.attempt_number).desc())
        return self.session.exec(stmt).all()

    def count_for_session(self, session_id: int) -> int:
        stmt = select(func.count(models.TestAttempt.id)).where(models.TestAttempt.student_session_id == session_id)
        return self.session.exec(stmt).one()

    def get_by_number(self, session_id: int, attempt_number: int) -> Optional[models.TestAttempt]:
        stmt = select(models.TestAttempt).where(
            models.TestAttempt.student_session_id == session_id,
            models.TestAttempt.attempt_number == attempt_number,
        )
        return self.session.exec(stmt).first()

    def latest_passed(self, session_id: int) -> Optional[models.TestAttempt]:
        stmt = select(models.TestAttempt).where(
            models.TestAttempt.student_session_id == session_id,
            models.TestAttempt.passed == True,  # noqa: E712
        ).order_by(col(models.TestAttempt.attempt_number).desc())
        return self.session.exec(stmt).first()


class CertificateRepository(_Repository):
    def get(self, certificate_id: int) -> Optional[models.Certificate]:
        return self.session.get(models.Certificate, certificate_id)

    def get_valid_for_session(self, session_id: int) -> Optional[models.Certificate]:
        stmt = select(models.Certificate).where(
            models.Certificate.student_session_id == session_id,
            models.Certificate.is_valid == True,  # noqa: E712
        )
        return self.session.exec(stmt).first()

    def list_for_session(self, session_id: int) -> List[models.Certificate]:
        """All certificates of a session, revoked ones included."""
        stmt = select(models.Certificate).where(models.Certificate.student_session_id == session_id)
        return self.session.exec(stmt).all()

    def get_by_verification_code(self, verification_code: str) -> Optional[models.Certificate]:
        stmt = select(models.Certificate).where(models.Certificate.verification_code == verification_code)
        return self.session.exec(stmt).first()

    def verification_code_exists(self, verification_code: str) -> bool:
        return self.get_by_verification_code(verification_code) is not None

    def number_exists(self, certificate_number: str) -> bool:
        stmt = select(models.Certificate.id).where(models.Certificate.certificate_number == certificate_number)
        return self.session.exec(stmt).first() is not None
