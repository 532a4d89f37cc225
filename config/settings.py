"""
Django settings for the mailvault project.

Values can be overridden with environment variables of the same name.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "mailvault-dev-insecure-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "0") == "1"
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "mailvault",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("MAILVAULT_DB_PATH", str(BASE_DIR / "mailvault.sqlite3")),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"
STATIC_URL = "static/"

# Archive storage and secrets
MAILVAULT_STORAGE_ROOT = Path(os.environ.get("MAILVAULT_STORAGE_ROOT", BASE_DIR / "archive"))
MAILVAULT_SECRETS_FILE = Path(os.environ.get("MAILVAULT_SECRETS_FILE", BASE_DIR / "secrets.json"))

# Accounts created by `manage.py discover_accounts`, e.g.
# {"name": "personal", "host": "https://api.fastmail.com", "auth_mode": "token"}
MAILVAULT_ACCOUNTS = []

# Sync engine tuning
MAILVAULT_PAGE_SIZE = int(os.environ.get("MAILVAULT_PAGE_SIZE", 50))
MAILVAULT_MAX_PAGES = int(os.environ.get("MAILVAULT_MAX_PAGES", 20))
MAILVAULT_WRITE_CONCURRENCY = int(os.environ.get("MAILVAULT_WRITE_CONCURRENCY", 8))
MAILVAULT_MAX_UNIT_ATTEMPTS = 3
MAILVAULT_MAX_OBJECT_RETRIES = 5
MAILVAULT_PASS_RETRIES = 3
MAILVAULT_BACKOFF_SECONDS = 2
MAILVAULT_BACKOFF_MAX_SECONDS = 60
MAILVAULT_LOCK_TTL_SECONDS = 3600
MAILVAULT_HTTP_TIMEOUT = 30

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_TASK_ALWAYS_EAGER = os.environ.get("CELERY_TASK_ALWAYS_EAGER", "0") == "1"
CELERY_BEAT_SCHEDULE = {
    "sync-due-accounts": {
        "task": "mailvault.tasks.sync_due_accounts",
        "schedule": 300.0,
    },
    "check-account-health": {
        "task": "mailvault.tasks.check_account_health",
        "schedule": 3600.0,
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "loggers": {
        "mailvault": {
            "handlers": ["console"],
            "level": os.environ.get("MAILVAULT_LOG_LEVEL", "INFO"),
        },
    },
}
