"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    DATABASE_URL: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    LOG_LEVEL: str
    ANALYSIS_CACHE_TTL_SECONDS: float
    ANALYSIS_CACHE_MAX_ENTRIES: int
    ATTEMPT_NUMBER_RETRIES: int
    DEFAULT_LANGUAGE: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'app.db'}")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.ANALYSIS_CACHE_TTL_SECONDS = float(os.getenv("ANALYSIS_CACHE_TTL_SECONDS", "5"))
        self.ANALYSIS_CACHE_MAX_ENTRIES = int(os.getenv("ANALYSIS_CACHE_MAX_ENTRIES", "1000"))
        self.ATTEMPT_NUMBER_RETRIES = int(os.getenv("ATTEMPT_NUMBER_RETRIES", "3"))
        self.DEFAULT_LANGUAGE = os.getenv("DEFAULT_LANGUAGE", "English")
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ANALYSIS_CACHE_TTL_SECONDS < 0:
            raise RuntimeError("ANALYSIS_CACHE_TTL_SECONDS must be >= 0")
        if self.ATTEMPT_NUMBER_RETRIES < 1:
            raise RuntimeError("ATTEMPT_NUMBER_RETRIES must be >= 1")


settings = Settings()
