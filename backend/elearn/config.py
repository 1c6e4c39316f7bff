"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    STUDENT_TOKEN_EXPIRE_DAYS: int
    ADMIN_TOKEN_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    LOGIN_RATE_LIMIT_PER_MIN: int
    LOGIN_RATE_LIMIT_WINDOW_SECONDS: int
    TIME_LIMIT_GRACE_SECONDS: int
    REQUIRE_THEORY_BEFORE_TEST: bool
    CODE_GENERATION_RETRIES: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", "").strip() or f"sqlite:///{BASE / 'app.db'}"
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.STUDENT_TOKEN_EXPIRE_DAYS = _int_env("STUDENT_TOKEN_EXPIRE_DAYS", 7)
        self.ADMIN_TOKEN_EXPIRE_HOURS = _int_env("ADMIN_TOKEN_EXPIRE_HOURS", 24)
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOGIN_RATE_LIMIT_PER_MIN = _int_env("LOGIN_RATE_LIMIT_PER_MIN", 30)
        self.LOGIN_RATE_LIMIT_WINDOW_SECONDS = _int_env("LOGIN_RATE_LIMIT_WINDOW_SECONDS", 60)
        # slack for network latency on timed tests
        self.TIME_LIMIT_GRACE_SECONDS = _int_env("TIME_LIMIT_GRACE_SECONDS", 60)
        self.REQUIRE_THEORY_BEFORE_TEST = os.getenv("REQUIRE_THEORY_BEFORE_TEST", "true").lower() == "true"
        self.CODE_GENERATION_RETRIES = _int_env("CODE_GENERATION_RETRIES", 5)
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.CODE_GENERATION_RETRIES < 1:
            raise RuntimeError("CODE_GENERATION_RETRIES must be >= 1")


settings = Settings()
