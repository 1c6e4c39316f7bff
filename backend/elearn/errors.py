"""Domain exceptions raised by services.

Every error carries the HTTP status a controller should answer with.
They subclass `ValueError` so callers that only care about "bad input"
can keep catching that.
"""


class ServiceError(ValueError):
    status_code = 400


class ValidationError(ServiceError):
    """Malformed or inconsistent input."""
    status_code = 400


class AuthError(ServiceError):
    """Missing/invalid credentials, token or access code."""
    status_code = 401


class AccessCodeRejected(AuthError):
    """An access code that cannot be used; `reason` holds one of the constants below."""
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class CapacityExceeded(AuthError):
    """The access code already has its maximum number of active students."""


class NotFoundError(ServiceError):
    status_code = 404


class PolicyViolation(ServiceError):
    """The request is well formed but not allowed (e.g. no attempts left)."""
    status_code = 400


class ConflictError(ServiceError):
    status_code = 409
