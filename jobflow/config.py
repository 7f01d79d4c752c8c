"""
Job Progression Platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name]())

Environment variables:
    DATABASE_URL / TEST_DATABASE_URL   SQLAlchemy URL (postgres:// accepted)
    SECRET_KEY                         required in production
    CORS_ORIGINS                       comma-separated, "*" in development
    STAGE_GRAPH_MAX_DEPTH              path search bound for transition checks
    AUTO_CREATE_TASKS                  "false" disables task generation on stage entry
    RATE_LIMIT_WRITE / RATE_LIMIT_READ Flask-Limiter limit strings
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'jobflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Random per-process key for development only
_DEV_SECRET = secrets.token_hex(32)

_POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
    "pool_timeout": 20,
}


def _database_url(env_var: str, fallback: str | None) -> str | None:
    """Read a database URL, normalising the Heroku/Railway ``postgres://`` scheme."""
    raw = os.getenv(env_var, "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL_OPTIONS)

    # HTTP
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
    MAX_CONTENT_LENGTH = 2 * 1024 * 1024  # 2 MB
    RATE_LIMIT_WRITE = os.getenv("RATE_LIMIT_WRITE", "60/minute")
    RATE_LIMIT_READ = os.getenv("RATE_LIMIT_READ", "200/minute")

    # Stage engine
    STAGE_GRAPH_MAX_DEPTH = int(os.getenv("STAGE_GRAPH_MAX_DEPTH", "50"))
    AUTO_CREATE_TASKS = _env_flag("AUTO_CREATE_TASKS")
    # hours past SLA -> severity, checked from the top
    SLA_SEVERITY_THRESHOLDS = (
        (48, "critical"),
        (24, "high"),
        (8, "medium"),
    )


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", _SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = _database_url("TEST_DATABASE_URL", _SQLITE_TEST)
    # StaticPool (in-memory SQLite) rejects pool sizing arguments
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Production: PostgreSQL with a statement timeout, explicit CORS origins."""

    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL_OPTIONS,
        "connect_args": {"options": "-c statement_timeout=30000"},  # 30s
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
