"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the course certification
backend. Controllers are intentionally thin: they accept requests,
delegate to services, and return JSON responses. Service errors are
translated to HTTP errors by `_service_errors`.

Endpoints implemented:
- GET /health, GET /verify/{verification_code}
- POST /auth/admin/login, /auth/company-admin/login, /auth/student/login
- GET /student/progress, /student/theory, /student/test,
  /student/attempts, /student/certificate
- POST /student/theory/complete, /student/test/submit
- /admin/... course, company, access code, theory, question,
  certificate and analytics management
"""

import json
import logging
import os
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict
from typing import Iterable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session

from . import models, services
from .auth import Principal, get_current_student, require_admin, require_super_admin
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import ServiceError
from .schemas import (
    AccessCodeIn,
    AdminLoginIn,
    CompanyAdminIn,
    CompanyIn,
    CourseIn,
    CourseUpdate,
    QuestionIn,
    QuestionUpdate,
    StudentLoginIn,
    SubmissionIn,
    TheorySlideIn,
    TheorySlideUpdate,
)
from .utils.rate_limit import InMemoryRateLimiter

app = FastAPI(title="Course Certification API")
logger = logging.getLogger("elearn.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
login_rate_limiter = InMemoryRateLimiter()

# Allow browser frontends on other origins during development
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": _client_host(request),
                },
                ensure_ascii=True,
            ),
        )
        response = JSONResponse(status_code=500, content={"detail": "internal server error"})
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": _client_host(request),
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@contextmanager
def _service_errors():
    """Translate domain errors raised inside the block into HTTP errors."""
    try:
        yield
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


def _enforce_login_rate_limit(request: Request) -> None:
    key = f"{_client_host(request)}:{request.url.path}"
    allowed, retry_after = login_rate_limiter.allow(
        key, settings.LOGIN_RATE_LIMIT_PER_MIN, settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def _row(obj, exclude: Iterable[str] = ()) -> dict:
    """Plain dict of a table row's columns (never includes password hashes)."""
    if obj is None:
        return None
    skip = set(exclude) | {"password_hash"}
    return {name: getattr(obj, name) for name in type(obj).model_fields if name not in skip}


def _session_out(s: models.StudentSession) -> dict:
    return _row(s, exclude=("ip_address", "user_agent"))


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


@app.get("/verify/{verification_code}")
def verify_certificate(verification_code: str, db: Session = Depends(get_session)):
    """Public certificate lookup; revoked certificates report `valid: false`."""
    with _service_errors():
        result = services.CertificateIssuer(db).verify(verification_code)
    result["certificate"] = _row(result["certificate"], exclude=("student_session_id", "test_attempt_id"))
    return result


# auth

@app.post("/auth/admin/login")
def admin_login(payload: AdminLoginIn, request: Request, db: Session = Depends(get_session)):
    _enforce_login_rate_limit(request)
    with _service_errors():
        token, admin = services.AuthService(db).login_admin(payload.username, payload.password)
    return {"token": token, "admin": {"id": admin.id, "username": admin.username, "role": admin.role}}


@app.post("/auth/company-admin/login")
def company_admin_login(payload: AdminLoginIn, request: Request, db: Session = Depends(get_session)):
    _enforce_login_rate_limit(request)
    with _service_errors():
        token, company_admin = services.AuthService(db).login_company_admin(payload.username, payload.password)
    return {
        "token": token,
        "admin": {
            "id": company_admin.id,
            "username": company_admin.username,
            "company_id": company_admin.company_id,
        },
    }


@app.post("/auth/student/login")
def student_login(payload: StudentLoginIn, request: Request, db: Session = Depends(get_session)):
    """Log a student in with (name, email, access code).

    Logging in again with the same triple resumes the same session.
    """
    _enforce_login_rate_limit(request)
    with _service_errors():
        student_session, token = services.SessionManager(db).login(
            payload.student_name,
            payload.student_email,
            payload.access_code,
            ip_address=_client_host(request),
            user_agent=request.headers.get("user-agent"),
        )
    return {"token": token, "session": _session_out(student_session)}


# student

@app.get("/student/progress")
def student_progress(db: Session = Depends(get_session),
                     student: models.StudentSession = Depends(get_current_student)):
    with _service_errors():
        p = services.SessionManager(db).progress(student)
    return {
        "session": _session_out(p["session"]),
        "course": _row(p["course"]),
        "company": _row(p["company"]),
        "access_code": {
            "code": p["access_code"].code,
            "theory_to_test": p["access_code"].theory_to_test,
            "valid_until": p["access_code"].valid_until,
        },
        "attempts": [_row(a, exclude=("answers", "answer_details")) for a in p["attempts"]],
        "theory_completed": p["theory_completed"],
        "test_completed": p["test_completed"],
        "passed": p["passed"],
        "status": p["status"],
        "is_terminal": p["is_terminal"],
        "attempts_remaining": p["attempts_remaining"],
        "certificate": _row(p["certificate"]),
    }


@app.get("/student/theory")
def student_theory(db: Session = Depends(get_session),
                   student: models.StudentSession = Depends(get_current_student)):
    """Return the course's theory slides in order and mark theory as started."""
    with _service_errors():
        slides = services.SessionManager(db).theory(student)
    return [_row(s, exclude=("is_active",)) for s in slides]


@app.post("/student/theory/complete")
def student_theory_complete(db: Session = Depends(get_session),
                            student: models.StudentSession = Depends(get_current_student)):
    with _service_errors():
        theory_to_test, certificate = services.SessionManager(db).complete_theory(student)
    return {"success": True, "theory_to_test": theory_to_test, "certificate": _row(certificate)}


@app.get("/student/test")
def student_test(db: Session = Depends(get_session),
                 student: models.StudentSession = Depends(get_current_student)):
    """Return a freshly shuffled test without answer keys."""
    with _service_errors():
        questions = services.StudentTestService(db).start_test(student)
    return [asdict(q) for q in questions]


@app.post("/student/test/submit")
def student_test_submit(submission: SubmissionIn, request: Request, db: Session = Depends(get_session),
                        student: models.StudentSession = Depends(get_current_student)):
    """Grade a submission, record the attempt and issue a certificate on pass."""
    with _service_errors():
        result = services.StudentTestService(db).submit(
            student, submission.answers, submission.time_taken_seconds, ip_address=_client_host(request)
        )
    attempt = _row(result.attempt)
    return {
        "attempt": attempt,
        "certificate": _row(result.certificate),
        "passed": attempt["passed"],
        "score": attempt["score"],
        "max_score": attempt["max_score"],
        "percentage": attempt["percentage"],
        "questions_count": result.questions_count,
        "attempts_remaining": result.attempts_remaining,
    }


@app.get("/student/attempts")
def student_attempts(db: Session = Depends(get_session),
                     student: models.StudentSession = Depends(get_current_student)):
    return [_row(a) for a in services.AttemptLedger(db).history(student.id)]


@app.get("/student/certificate")
def student_certificate(db: Session = Depends(get_session),
                        student: models.StudentSession = Depends(get_current_student)):
    """Return the session's certificate, issuing it first if it is owed."""
    with _service_errors():
        view = services.StudentTestService(db).certificate_view(student)
    return {
        "certificate": _row(view["certificate"]),
        "course": _row(view["course"]),
        "company": _row(view["company"]),
        "student": view["student"],
    }


# admin: courses

@app.get("/admin/courses")
def admin_list_courses(db: Session = Depends(get_session), admin: Principal = Depends(require_admin)):
    return [_row(c) for c in services.CatalogService(db).list_courses()]


@app.post("/admin/courses", status_code=201)
def admin_create_course(payload: CourseIn, db: Session = Depends(get_session),
                        admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        course = services.CatalogService(db).create_course(payload.model_dump())
    return _row(course)


@app.put("/admin/courses/{course_id}")
def admin_update_course(course_id: int, payload: CourseUpdate, db: Session = Depends(get_session),
                        admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        course = services.CatalogService(db).update_course(course_id, payload.model_dump(exclude_unset=True))
    return _row(course)


@app.delete("/admin/courses/{course_id}")
def admin_delete_course(course_id: int, db: Session = Depends(get_session),
                        admin: Principal = Depends(require_super_admin)):
    """Soft-delete a course together with its codes, slides and questions."""
    with _service_errors():
        services.CatalogService(db).delete_course(course_id)
    return {"success": True}


# admin: companies

@app.get("/admin/companies")
def admin_list_companies(db: Session = Depends(get_session), admin: Principal = Depends(require_super_admin)):
    return [_row(c) for c in services.CatalogService(db).list_companies()]


@app.post("/admin/companies", status_code=201)
def admin_create_company(payload: CompanyIn, db: Session = Depends(get_session),
                         admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        company = services.CatalogService(db).create_company(payload.model_dump())
    return _row(company)


@app.post("/admin/companies/{company_id}/admins", status_code=201)
def admin_create_company_admin(company_id: int, payload: CompanyAdminIn, db: Session = Depends(get_session),
                               admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        company_admin = services.AuthService(db).create_company_admin(
            company_id, payload.username, payload.password, email=payload.email, created_by=admin.id
        )
    return _row(company_admin)


# admin: access codes

@app.get("/admin/access-codes")
def admin_list_access_codes(db: Session = Depends(get_session), admin: Principal = Depends(require_admin)):
    """List access codes with their active usage; company admins see their company only."""
    company_id = None if admin.is_super_admin else admin.company_id
    out = []
    for access_code, active in services.AccessCodeRegistry(db).list_codes(company_id=company_id):
        row = _row(access_code)
        row["active_participants"] = active
        out.append(row)
    return out


@app.post("/admin/access-codes", status_code=201)
def admin_generate_access_codes(payload: AccessCodeIn, db: Session = Depends(get_session),
                                admin: Principal = Depends(require_super_admin)):
    """Generate 1..100 access codes for a course in one request."""
    with _service_errors():
        created = services.AccessCodeRegistry(db).generate_batch(
            course_id=payload.course_id,
            valid_until=payload.valid_until,
            company_id=payload.company_id,
            max_participants=payload.max_participants,
            unlimited_participants=payload.unlimited_participants,
            theory_to_test=payload.theory_to_test,
            quantity=payload.quantity,
            created_by=admin.id,
        )
    return [_row(c) for c in created]


@app.post("/admin/access-codes/{access_code_id}/deactivate")
def admin_deactivate_access_code(access_code_id: int, db: Session = Depends(get_session),
                                 admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        access_code = services.AccessCodeRegistry(db).deactivate(access_code_id)
    return _row(access_code)


@app.get("/admin/analytics")
def admin_analytics(db: Session = Depends(get_session), admin: Principal = Depends(require_super_admin)):
    return services.AnalyticsService(db).summary()


# admin: theory slides

@app.get("/admin/courses/{course_id}/theory")
def admin_list_slides(course_id: int, db: Session = Depends(get_session),
                      admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        slides = services.CatalogService(db).list_slides(course_id)
    return [_row(s) for s in slides]


@app.post("/admin/courses/{course_id}/theory", status_code=201)
def admin_create_slide(course_id: int, payload: TheorySlideIn, db: Session = Depends(get_session),
                       admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        slide = services.CatalogService(db).create_slide(course_id, payload.model_dump())
    return _row(slide)


@app.put("/admin/theory/{slide_id}")
def admin_update_slide(slide_id: int, payload: TheorySlideUpdate, db: Session = Depends(get_session),
                       admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        slide = services.CatalogService(db).update_slide(slide_id, payload.model_dump(exclude_unset=True))
    return _row(slide)


@app.delete("/admin/theory/{slide_id}")
def admin_delete_slide(slide_id: int, db: Session = Depends(get_session),
                       admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        services.CatalogService(db).delete_slide(slide_id)
    return {"success": True}


# admin: questions

@app.get("/admin/courses/{course_id}/questions")
def admin_list_questions(course_id: int, db: Session = Depends(get_session),
                         admin: Principal = Depends(require_super_admin)):
    """List a course's questions including answer keys."""
    with _service_errors():
        questions = services.CatalogService(db).list_questions(course_id)
    return [_row(q) for q in questions]


@app.post("/admin/courses/{course_id}/questions", status_code=201)
def admin_create_question(course_id: int, payload: QuestionIn, db: Session = Depends(get_session),
                          admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        question = services.CatalogService(db).create_question(course_id, payload.model_dump())
    return _row(question)


@app.put("/admin/questions/{question_id}")
def admin_update_question(question_id: int, payload: QuestionUpdate, db: Session = Depends(get_session),
                          admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        question = services.CatalogService(db).update_question(
            question_id, payload.model_dump(exclude_unset=True)
        )
    return _row(question)


@app.delete("/admin/questions/{question_id}")
def admin_delete_question(question_id: int, db: Session = Depends(get_session),
                          admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        services.CatalogService(db).delete_question(question_id)
    return {"success": True}


@app.post("/admin/certificates/{certificate_id}/revoke")
def admin_revoke_certificate(certificate_id: int, db: Session = Depends(get_session),
                             admin: Principal = Depends(require_super_admin)):
    with _service_errors():
        certificate = services.CertificateIssuer(db).revoke(certificate_id)
    return _row(certificate)
