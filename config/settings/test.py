"""
Test settings: in-memory database, local-memory cache and mail outbox.
"""

from .base import *  # noqa: F403,F405

SECRET_KEY = "test-secret-key"

DEBUG = False

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "safekeep-tests",
    }
}

EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True

BACKUP_SOURCE_URI = "mongodb://localhost:27017/safekeep"
BACKUP_STAGING_URI = "mongodb://localhost:27018/safekeep_staging"
BACKUP_KEY_COLLECTIONS = ["users", "records", "backups"]
BACKUP_STORAGE_BACKEND = "local"
BACKUP_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"
BACKUP_ALERT_EMAILS = ["ops@example.com"]
BACKUP_ALERT_WEBHOOK_URL = ""
BACKUP_NOTIFY_ON_SUCCESS = False

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "level": "WARNING",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
}
