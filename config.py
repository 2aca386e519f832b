"""
Application configuration: environment-aware settings.

All environment variables are documented here. See .env.example for a template.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv(BASE_DIR / ".env")


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    # Document database (SQLite file)
    DATABASE = os.environ.get("DATABASE_PATH", str(BASE_DIR / "tutor_portal.db"))

    # Uploads are read fully into memory before being written to blob storage
    MAX_CONTENT_LENGTH = 50 * 1024 * 1024  # 50 MB

    # Blob storage
    BLOB_STORAGE_DIR = os.environ.get("BLOB_STORAGE_DIR", str(BASE_DIR / "blob_data"))
    BLOB_CONTAINER = os.environ.get("BLOB_CONTAINER", "lesson-files")
    BLOB_BASE_URL = os.environ.get("BLOB_BASE_URL", "")
    UPLOAD_SIGNED_URLS = os.environ.get("UPLOAD_SIGNED_URLS", "true").lower() == "true"
    DOWNLOAD_URL_TTL_MINUTES = int(os.environ.get("DOWNLOAD_URL_TTL_MINUTES", "15"))

    # Identity provider (bearer tokens)
    IDENTITY_TOKEN_SECRET = os.environ.get("IDENTITY_TOKEN_SECRET", "")
    IDENTITY_TOKEN_ALGORITHMS = os.environ.get("IDENTITY_TOKEN_ALGORITHMS", "HS256").split(",")
    IDENTITY_TOKEN_AUDIENCE = os.environ.get("IDENTITY_TOKEN_AUDIENCE", "")
    IDENTITY_TOKEN_ISSUER = os.environ.get("IDENTITY_TOKEN_ISSUER", "")
    IDENTITY_TENANT_ID = os.environ.get("IDENTITY_TENANT_ID", "")
    IDENTITY_TENANT_DOMAIN = os.environ.get("IDENTITY_TENANT_DOMAIN", "")
    IDENTITY_CLIENT_ID = os.environ.get("IDENTITY_CLIENT_ID", "")
    IDENTITY_CLIENT_SECRET = os.environ.get("IDENTITY_CLIENT_SECRET", "")

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Email
    EMAIL_BACKEND = os.environ.get("EMAIL_BACKEND", "log")  # "log" or "smtp"
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", "587"))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD", "")
    MAIL_FROM = os.environ.get("MAIL_FROM", "noreply@example.com")
    ADMIN_NOTIFY_EMAIL = os.environ.get("ADMIN_NOTIFY_EMAIL", "")
    BASE_URL = os.environ.get("BASE_URL", "http://localhost:5001")

    # Stripe payments
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_PUBLISHABLE_KEY = os.environ.get("STRIPE_PUBLISHABLE_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    # Portal behaviour
    DEFAULT_ORGANIZATION = os.environ.get("DEFAULT_ORGANIZATION", "BrightStars-NorthLondon")
    INVITATION_EXPIRY_DAYS = int(os.environ.get("INVITATION_EXPIRY_DAYS", "7"))
    HOMEWORK_DEFAULT_DUE_DAYS = int(os.environ.get("HOMEWORK_DEFAULT_DUE_DAYS", "7"))
    CORS_ALLOW_ORIGIN = os.environ.get("CORS_ALLOW_ORIGIN", "*")

    # Rate limiting (in-memory per process)
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")
    IDENTITY_TOKEN_SECRET = os.environ.get("IDENTITY_TOKEN_SECRET", "dev-identity-secret")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if not cls.IDENTITY_TOKEN_SECRET:
            errors.append("IDENTITY_TOKEN_SECRET must be set to verify bearer tokens.")

        if not cls.STRIPE_SECRET_KEY:
            warnings.warn("STRIPE_SECRET_KEY is not set; billing endpoints will be unavailable.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    RATELIMIT_ENABLED = False
    IDENTITY_TOKEN_SECRET = "test-identity-secret"


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
