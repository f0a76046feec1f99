"""
SignFlow — Document Signature Workflow
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'signflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Logging: json | readable (default depends on DEBUG / TESTING)
    LOG_FORMAT = os.getenv("LOG_FORMAT", "")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "")

    # Redis (rate limiter storage)
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Email / SMTP (optional, dev mode logs without sending)
    MAIL_SERVER = os.getenv("MAIL_SERVER")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "noreply@signflow.local")
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Signing provider (Dropbox Sign compatible REST API)
    SIGNING_API_BASE_URL = os.getenv("SIGNING_API_BASE_URL", "https://api.hellosign.com/v3")
    SIGNING_API_KEY = os.getenv("SIGNING_API_KEY", "")
    SIGNING_CLIENT_ID = os.getenv("SIGNING_CLIENT_ID", "")
    # Provider signs callbacks with the account API key unless a dedicated secret is set
    SIGNING_WEBHOOK_SECRET = os.getenv("SIGNING_WEBHOOK_SECRET", "") or SIGNING_API_KEY
    SIGNING_TEST_MODE = os.getenv("SIGNING_TEST_MODE", "true").lower() == "true"
    SIGNING_TIMEOUT_SECONDS = int(os.getenv("SIGNING_TIMEOUT_SECONDS", "30"))
    SIGN_URL_TTL_SECONDS = int(os.getenv("SIGN_URL_TTL_SECONDS", "3600"))
    SIGNED_FILES_DIR = os.getenv("SIGNED_FILES_DIR", os.path.join(basedir, "uploads", "signed"))

    # Workflow
    REMINDER_AFTER_DAYS = int(os.getenv("REMINDER_AFTER_DAYS", "2"))
    REMINDER_COOLDOWN_HOURS = int(os.getenv("REMINDER_COOLDOWN_HOURS", "24"))
    EVENT_STORE_RETRY_ATTEMPTS = int(os.getenv("EVENT_STORE_RETRY_ATTEMPTS", "3"))

    # db.create_all() at startup; production runs Alembic migrations instead
    AUTO_CREATE_SCHEMA = os.getenv("AUTO_CREATE_SCHEMA", "false").lower() == "true"


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    AUTO_CREATE_SCHEMA = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False

    SIGNING_API_BASE_URL = "https://signing.test/v3"
    SIGNING_API_KEY = "test-api-key"
    SIGNING_CLIENT_ID = "test-client-id"
    SIGNING_WEBHOOK_SECRET = "test-api-key"
    SIGNING_TEST_MODE = True
    SIGNING_TIMEOUT_SECONDS = 5


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production
    SIGNING_TEST_MODE = os.getenv("SIGNING_TEST_MODE", "false").lower() == "true"

    # Override engine options with PostgreSQL statement timeout
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if not self.SIGNING_API_KEY:
            raise RuntimeError("SIGNING_API_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
