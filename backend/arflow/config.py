"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    DATABASE_URL: str
    ENCRYPTION_KEY: str
    APP_URL: str
    LOG_LEVEL: str
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    HTTP_TIMEOUT_SECONDS: float
    PUBLIC_RATE_LIMIT_PER_MIN: int
    RESEND_API_KEY: str
    RESEND_API_URL: str
    EMAIL_FROM: str
    EMAIL_REPLY_TO: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'arflow.db'}")
        self.ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")
        self.APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
        self.PUBLIC_RATE_LIMIT_PER_MIN = int(os.getenv("PUBLIC_RATE_LIMIT_PER_MIN", "30"))
        self.RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
        self.RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com").rstrip("/")
        self.EMAIL_FROM = os.getenv("RESEND_FROM_EMAIL", "noreply@arflow.app")
        self.EMAIL_REPLY_TO = os.getenv("RESEND_REPLY_TO_EMAIL", "")
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ENV != "dev" and not self.ENCRYPTION_KEY:
            raise RuntimeError("ENCRYPTION_KEY must be set in non-dev environments")
        if self.JWT_EXPIRE_HOURS <= 0:
            raise RuntimeError("JWT_EXPIRE_HOURS must be positive")


settings = Settings()
