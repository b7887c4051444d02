"""
Django settings for the settlement service.

This is the single settings file for all environments. Configuration is driven
by environment variables using django-environ, following the 12-factor app
methodology.

Environment files:
    - .env.development: Development settings (DEBUG=True)
    - .env.production: Production settings (DEBUG=False)

For the full list of settings and their values, see:
https://docs.djangoproject.com/en/5.2/ref/settings/
"""

import os
from pathlib import Path

import environ

# =============================================================================
# Path Configuration
# =============================================================================
BASE_DIR = Path(__file__).resolve().parent.parent

# =============================================================================
# Environment Configuration
# =============================================================================
env = environ.Env(
    DEBUG=(bool, False),
    ALLOWED_HOSTS=(list, []),
    LOG_LEVEL=(str, "INFO"),
)

# Note: In Docker, env vars are passed directly; .env files are for local dev
env_file = os.environ.get("ENV_FILE", BASE_DIR.parent / ".env.development")
if Path(env_file).exists():
    environ.Env.read_env(env_file)

# =============================================================================
# Core Settings
# =============================================================================
# SECURITY WARNING: set SECRET_KEY in every deployed environment
SECRET_KEY = env("SECRET_KEY", default="insecure-local-settlement-key")

DEBUG = env("DEBUG")

ALLOWED_HOSTS = env("ALLOWED_HOSTS")

# =============================================================================
# Application Definition
# =============================================================================
INSTALLED_APPS = [
    # Django core apps
    "django.contrib.contenttypes",
    "django.contrib.auth",
    # Third-party apps
    "django_celery_beat",
    # Local apps
    "core",
    "settlements",
]

# =============================================================================
# Database Configuration
# =============================================================================
# Production runs on PostgreSQL via DATABASE_URL; the SQLite default keeps
# local runs and the test suite self-contained.
DATABASES = {
    "default": env.db(
        "DATABASE_URL",
        default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}",
    ),
}

# =============================================================================
# Cache Configuration
# =============================================================================
CACHES = {
    "default": {
        "BACKEND": "django_redis.cache.RedisCache",
        "LOCATION": env("REDIS_URL", default="redis://localhost:6379/0"),
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
            # Fall back to the database when Redis is unreachable
            "IGNORE_EXCEPTIONS": True,
        },
    }
}

# =============================================================================
# Celery Configuration
# =============================================================================
CELERY_BROKER_URL = env("CELERY_BROKER_URL", default="redis://localhost:6379/1")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", default="redis://localhost:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = "UTC"
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 30 * 60  # 30 minutes
CELERY_BEAT_SCHEDULER = "django_celery_beat.schedulers:DatabaseScheduler"

# =============================================================================
# Stripe Configuration
# =============================================================================
# Use test keys (sk_test_...) for development, live keys (sk_live_...) for production
STRIPE_SECRET_KEY = env("STRIPE_SECRET_KEY", default="")

# API timeout in seconds; a timeout counts as a failed charge or payout
STRIPE_API_TIMEOUT_SECONDS = env.int("STRIPE_API_TIMEOUT_SECONDS", default=10)

# =============================================================================
# Platform Configuration
# =============================================================================
# Platform fee percentage taken from each earning when neither a
# per-professional override nor a stored platform setting exists
PLATFORM_FEE_PERCENT = env.int("PLATFORM_FEE_PERCENT", default=20)

# Seconds the stored platform fee percent stays cached
PLATFORM_SETTING_CACHE_SECONDS = env.int("PLATFORM_SETTING_CACHE_SECONDS", default=300)

# =============================================================================
# Settlement Configuration
# =============================================================================
# Cycles are weekly windows starting Monday 00:00 UTC; they become chargeable
# this many days after the window ends
SETTLEMENT_CYCLE_GRACE_DAYS = env.int("SETTLEMENT_CYCLE_GRACE_DAYS", default=2)

# A party that has not answered this many hours after the appointment ended
# is treated as having confirmed (applies to client and professional alike).
# Confirmations still awaiting at cycle cutoff are auto-confirmed regardless.
SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS = env.int(
    "SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS", default=48
)

# Confirmations still waiting on a party get one reminder event after this delay
SETTLEMENT_REMINDER_AFTER_HOURS = env.int("SETTLEMENT_REMINDER_AFTER_HOURS", default=24)

# Fee charge attempts before the charge fails and the account is blocked
FEE_CHARGE_MAX_ATTEMPTS = env.int("FEE_CHARGE_MAX_ATTEMPTS", default=3)

# Exponential backoff between fee charge attempts
FEE_CHARGE_RETRY_BASE_SECONDS = env.int("FEE_CHARGE_RETRY_BASE_SECONDS", default=3600)
# Stays below the gateway's 24h idempotency key retention
FEE_CHARGE_RETRY_MAX_SECONDS = env.int("FEE_CHARGE_RETRY_MAX_SECONDS", default=43200)

SETTLEMENT_CURRENCY = env("SETTLEMENT_CURRENCY", default="usd")

# Dotted Celery task name that receives outbound settlement events.
# Empty means events are only logged.
SETTLEMENT_NOTIFICATION_TASK = env("SETTLEMENT_NOTIFICATION_TASK", default="")

# =============================================================================
# Internationalization
# =============================================================================
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# =============================================================================
# Default Primary Key Field Type
# =============================================================================
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL = env("LOG_LEVEL")

# Log file name determined by service (celery-worker, celery-beat)
LOG_FILE_NAME = env("LOG_FILE_NAME", default="settlements.log")
LOG_DIR = BASE_DIR / "logs"

LOG_DIR.mkdir(parents=True, exist_ok=True)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "file": {
            "format": "[{asctime}] {levelname} {name} {module}:{lineno} - {message}",
            "style": "{",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
        "file": {
            # Max 10MB per file, keeps 5 backups
            "level": "DEBUG",
            "class": "logging.handlers.RotatingFileHandler",
            "filename": LOG_DIR / LOG_FILE_NAME,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "file",
            "encoding": "utf-8",
        },
    },
    "root": {
        "handlers": ["console", "file"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "settlements": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "celery": {
            "handlers": ["console", "file"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
