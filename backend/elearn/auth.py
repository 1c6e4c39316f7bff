"""Authentication helpers and FastAPI security dependencies.

Tokens are HS256 JWTs. A student token carries `session_id`; a
super-admin token carries `admin_id`; a company admin token carries
`company_admin_id`. `get_principal` turns a bearer token into a
`Principal` and the `require_*` dependencies resolve it against the
database, raising HTTPException(401/403) so they can be used directly in
route signatures.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

STUDENT = "student"
ADMIN = "admin"
COMPANY_ADMIN = "company_admin"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller resolved from a token."""
    kind: str
    id: int
    company_id: Optional[int] = None

    @property
    def is_super_admin(self) -> bool:
        return self.kind == ADMIN


def hash_password(password: str) -> str:
    return PWD_CTX.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return PWD_CTX.verify(password, password_hash)


def create_token(claims: dict, expires_in: timedelta) -> str:
    """Sign `claims` with an expiry `expires_in` from now."""
    expire = datetime.now(timezone.utc) + expires_in
    payload = dict(claims, exp=int(expire.timestamp()))
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_student_token(session_id: int) -> str:
    return create_token({"session_id": session_id}, timedelta(days=settings.STUDENT_TOKEN_EXPIRE_DAYS))


def create_admin_token(admin_id: int) -> str:
    return create_token({"admin_id": admin_id}, timedelta(hours=settings.ADMIN_TOKEN_EXPIRE_HOURS))


def create_company_admin_token(company_admin_id: int, company_id: int) -> str:
    return create_token(
        {"company_admin_id": company_admin_id, "company_id": company_id},
        timedelta(hours=settings.ADMIN_TOKEN_EXPIRE_HOURS),
    )


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def principal_from_payload(payload: dict) -> Principal:
    if payload.get('session_id') is not None:
        return Principal(kind=STUDENT, id=int(payload['session_id']))
    if payload.get('admin_id') is not None:
        return Principal(kind=ADMIN, id=int(payload['admin_id']))
    if payload.get('company_admin_id') is not None:
        company_id = payload.get('company_id')
        return Principal(kind=COMPANY_ADMIN, id=int(payload['company_admin_id']),
                         company_id=int(company_id) if company_id is not None else None)
    raise HTTPException(status_code=401, detail='invalid token payload')


def get_principal(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> Principal:
    """FastAPI dependency returning the caller identity from the bearer token."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail='no token provided')
    return principal_from_payload(decode_token(credentials.credentials))


def get_current_student(principal: Principal = Depends(get_principal),
                        db: Session = Depends(get_session)) -> models.StudentSession:
    """Return the `StudentSession` bound to a student token."""
    if principal.kind != STUDENT:
        raise HTTPException(status_code=403, detail='student token required')
    session = repositories.StudentSessionRepository(db).get(principal.id)
    if not session:
        raise HTTPException(status_code=401, detail='invalid session')
    return session


def require_admin(principal: Principal = Depends(get_principal),
                  db: Session = Depends(get_session)) -> Principal:
    """Allow super-admins and company admins whose accounts are active."""
    if principal.kind == ADMIN:
        admin = repositories.AdminRepository(db).get(principal.id)
        if not admin or not admin.is_active:
            raise HTTPException(status_code=401, detail='invalid token')
        return principal
    if principal.kind == COMPANY_ADMIN:
        company_admin = repositories.CompanyAdminRepository(db).get(principal.id)
        if not company_admin or not company_admin.is_active:
            raise HTTPException(status_code=401, detail='invalid token')
        # company scope comes from the database, not the token
        return Principal(kind=COMPANY_ADMIN, id=company_admin.id, company_id=company_admin.company_id)
    raise HTTPException(status_code=403, detail='admin token required')


def require_super_admin(principal: Principal = Depends(require_admin)) -> Principal:
    if not principal.is_super_admin:
        raise HTTPException(status_code=403, detail='super-admin required')
    return principal
