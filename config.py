"""
Runtime configuration.

All secrets and tunables are read from the environment once, into a single
Settings object that is handed to the hasher, token service, stores and app
factory at construction time.
"""

import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "fi_reviews"
    db_timeout_seconds: float = Field(5.0, gt=0)

    jwt_secret: str = "change-me-access"
    jwt_refresh_secret: str = "change-me-refresh"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(24 * 60, gt=0)
    refresh_token_expire_days: int = Field(7, gt=0)

    bcrypt_rounds: int = Field(10, ge=4, le=31)

    access_cookie_name: str = "token"
    refresh_cookie_name: str = "refreshToken"
    cookie_secure: bool = False

    upload_dir: str = "uploads"
    max_upload_bytes: int = 2 * 1024 * 1024

    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    admin_name: str = "Administrator"

    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    def check(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        env = os.environ
        values = {
            "database_url": env.get("DATABASE_URL"),
            "database_name": env.get("DATABASE_NAME"),
            "db_timeout_seconds": env.get("DB_TIMEOUT_SECONDS"),
            "jwt_secret": env.get("JWT_SECRET"),
            "jwt_refresh_secret": env.get("JWT_REFRESH_SECRET"),
            "jwt_algorithm": env.get("JWT_ALGORITHM"),
            "access_token_expire_minutes": env.get("ACCESS_TOKEN_EXPIRE_MINUTES"),
            "refresh_token_expire_days": env.get("REFRESH_TOKEN_EXPIRE_DAYS"),
            "bcrypt_rounds": env.get("BCRYPT_ROUNDS"),
            "access_cookie_name": env.get("ACCESS_COOKIE_NAME"),
            "refresh_cookie_name": env.get("REFRESH_COOKIE_NAME"),
            "cookie_secure": env.get("COOKIE_SECURE"),
            "upload_dir": env.get("UPLOAD_DIR"),
            "max_upload_bytes": env.get("MAX_UPLOAD_BYTES"),
            "admin_email": env.get("ADMIN_EMAIL"),
            "admin_password": env.get("ADMIN_PASSWORD"),
            "admin_name": env.get("ADMIN_NAME"),
            "log_level": env.get("LOG_LEVEL"),
        }
        origins = env.get("CORS_ORIGINS")
        if origins:
            values["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        return cls(**{k: v for k, v in values.items() if v is not None}).check()
