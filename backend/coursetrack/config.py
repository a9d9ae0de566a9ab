"""Application settings and validation."""

import os
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


class Settings:
    ENV: str
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    ALLOW_DEV_CORS: bool
    DATABASE_URL: str
    ADMIN_USERNAMES: frozenset
    PROGRESS_WRITE_RETRIES: int

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.ALLOW_INSECURE_JWT = os.getenv("ALLOW_INSECURE_JWT", "false").lower() == "true"
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{BASE / 'coursetrack.db'}")
        self.ADMIN_USERNAMES = frozenset(
            name.strip() for name in os.getenv("ADMIN_USERNAMES", "").split(",") if name.strip()
        )
        self.PROGRESS_WRITE_RETRIES = int(os.getenv("PROGRESS_WRITE_RETRIES", "3"))
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        if self.ENV != "dev" and not self.ADMIN_USERNAMES:
            raise RuntimeError("ADMIN_USERNAMES must be set in non-dev environments")
        if self.PROGRESS_WRITE_RETRIES < 1:
            raise RuntimeError("PROGRESS_WRITE_RETRIES must be >= 1")


settings = Settings()
