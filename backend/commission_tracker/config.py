"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    DATABASE_URL: str
    SESSION_TTL_HOURS: int
    SESSION_COOKIE_NAME: str
    SECURE_COOKIES: bool
    ALLOW_INSECURE_COOKIES: bool
    DEFAULT_EXCHANGE_RATE: float
    LOGIN_RATE_LIMIT_PER_MIN: int
    MAX_UPLOAD_BYTES: int
    ALLOW_DEV_CORS: bool
    ADMIN_EMAIL: str
    ADMIN_PASSWORD: str
    HOST: str
    PORT: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))
        self.SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session_token")
        default_secure = "false" if self.ENV == "dev" else "true"
        self.SECURE_COOKIES = os.getenv("SECURE_COOKIES", default_secure).lower() == "true"
        self.ALLOW_INSECURE_COOKIES = os.getenv("ALLOW_INSECURE_COOKIES", "false").lower() == "true"
        self.DEFAULT_EXCHANGE_RATE = float(os.getenv("DEFAULT_EXCHANGE_RATE", "83.5"))
        self.LOGIN_RATE_LIMIT_PER_MIN = int(os.getenv("LOGIN_RATE_LIMIT_PER_MIN", "10"))
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))  # 5 MB default
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "").strip()
        self.ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
        self.HOST = os.getenv("HOST", "127.0.0.1")
        self.PORT = int(os.getenv("PORT", "8000"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.SECURE_COOKIES and not self.ALLOW_INSECURE_COOKIES:
            raise RuntimeError("SECURE_COOKIES must be enabled in non-dev environments")
        if self.SESSION_TTL_HOURS <= 0:
            raise RuntimeError("SESSION_TTL_HOURS must be positive")
        if self.DEFAULT_EXCHANGE_RATE <= 0:
            raise RuntimeError("DEFAULT_EXCHANGE_RATE must be positive")


settings = Settings()
