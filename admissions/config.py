"""
Admissions Workflow Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'admissions_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


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

    # Redis (rate limiter storage in production)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # CORS (applicant/admin SPA is served from a separate origin)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Workflow engine ──────────────────────────────────────────────────
    WORKFLOW_AUTO_PROCESS_TRANSITIONS = _env_bool("WORKFLOW_AUTO_PROCESS_TRANSITIONS", "true")
    WORKFLOW_SCAN_INTERVAL_MINUTES = int(os.getenv("WORKFLOW_SCAN_INTERVAL_MINUTES", "5"))
    WORKFLOW_SCAN_BATCH_SIZE = int(os.getenv("WORKFLOW_SCAN_BATCH_SIZE", "200"))
    WORKFLOW_SYSTEM_ACTOR = os.getenv("WORKFLOW_SYSTEM_ACTOR", "system")

    # Background scheduler thread (scan + outbox dispatch)
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "false")
    SCHEDULER_POLL_SECONDS = int(os.getenv("SCHEDULER_POLL_SECONDS", "30"))

    # ── Side-effect outbox ───────────────────────────────────────────────
    SIDE_EFFECT_MAX_ATTEMPTS = int(os.getenv("SIDE_EFFECT_MAX_ATTEMPTS", "3"))
    SIDE_EFFECT_BACKOFF_SECONDS = int(os.getenv("SIDE_EFFECT_BACKOFF_SECONDS", "60"))
    SIDE_EFFECT_BATCH_SIZE = int(os.getenv("SIDE_EFFECT_BATCH_SIZE", "100"))
    SIDE_EFFECT_CLAIM_TIMEOUT_SECONDS = int(os.getenv("SIDE_EFFECT_CLAIM_TIMEOUT_SECONDS", "300"))

    # ── Student information system / learning management system ─────────
    # Unset base URL = integration disabled (sync jobs complete as skipped)
    SIS_BASE_URL = os.getenv("SIS_BASE_URL")
    SIS_API_KEY = os.getenv("SIS_API_KEY")
    LMS_BASE_URL = os.getenv("LMS_BASE_URL")
    LMS_API_KEY = os.getenv("LMS_API_KEY")
    LMS_SYNC_STAGES = os.getenv("LMS_SYNC_STAGES", "Enrollment")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # SQLite in-memory rejects the pool sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    # Side effects are dispatched explicitly by tests
    SIDE_EFFECT_BACKOFF_SECONDS = 0
    SIS_BASE_URL = None
    LMS_BASE_URL = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

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


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
