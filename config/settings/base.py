"""
Base Django settings for the safekeep backup service.
Common settings shared across all environments.
"""

import os
from pathlib import Path

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent.parent


def env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    value = os.getenv(name, "")
    return int(value) if value.strip() else default


def env_list(name: str, default: str = "") -> list:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# Application definition
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    # Local apps
    "apps.backups",
]

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

# Celery Configuration
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_ACKS_LATE = False
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_ROUTES = {"apps.backups.tasks.*": {"queue": "backups"}}

# Email
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "backups@safekeep.local")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Backup Configuration
# Database being protected and the staging server used for restore tests
BACKUP_SOURCE_URI = os.getenv("BACKUP_SOURCE_URI", "mongodb://localhost:27017/safekeep")
BACKUP_STAGING_URI = os.getenv("BACKUP_STAGING_URI", "mongodb://localhost:27018/safekeep_staging")
BACKUP_KEY_COLLECTIONS = env_list("BACKUP_KEY_COLLECTIONS", "users,records,backups")

# Storage: "local" or "s3" (any S3-compatible provider through BACKUP_S3_ENDPOINT_URL)
BACKUP_STORAGE_BACKEND = os.getenv("BACKUP_STORAGE_BACKEND", "local")
BACKUP_LOCAL_PATH = os.getenv("BACKUP_LOCAL_PATH", str(BASE_DIR / "backups"))
BACKUP_TEMP_DIR = os.getenv("BACKUP_TEMP_DIR") or None
BACKUP_S3_BUCKET = os.getenv("BACKUP_S3_BUCKET", "")
BACKUP_S3_PREFIX = os.getenv("BACKUP_S3_PREFIX", "mongodb-backups/")
BACKUP_S3_REGION = os.getenv("BACKUP_S3_REGION", "us-east-1")
BACKUP_S3_ENDPOINT_URL = os.getenv("BACKUP_S3_ENDPOINT_URL") or None
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "")

# AES-256-GCM key: exactly 32 bytes, or "base64:<44 chars>"
BACKUP_ENCRYPTION_KEY = os.getenv("BACKUP_ENCRYPTION_KEY", "")

BACKUP_RETENTION_DAYS = env_int("BACKUP_RETENTION_DAYS", 30)

# Schedules (cron: minute hour day-of-month month day-of-week)
BACKUP_FULL_CRON = os.getenv("BACKUP_FULL_CRON", "0 2 * * *")
BACKUP_INCREMENTAL_CRON = os.getenv("BACKUP_INCREMENTAL_CRON", "0 * * * *")
BACKUP_CLEANUP_CRON = os.getenv("BACKUP_CLEANUP_CRON", "0 3 * * 0")
BACKUP_HEALTH_CHECK_CRON = os.getenv("BACKUP_HEALTH_CHECK_CRON", "0 */6 * * *")
BACKUP_QUARTERLY_DRILL_CRON = os.getenv("BACKUP_QUARTERLY_DRILL_CRON", "0 4 1 1,4,7,10 *")

# Timeouts
BACKUP_DUMP_TIMEOUT_SECONDS = env_int("BACKUP_DUMP_TIMEOUT_SECONDS", 3600)
BACKUP_RESTORE_TIMEOUT_SECONDS = env_int("BACKUP_RESTORE_TIMEOUT_SECONDS", 3600)
BACKUP_TASK_SOFT_TIME_LIMIT_SECONDS = BACKUP_DUMP_TIMEOUT_SECONDS + BACKUP_RESTORE_TIMEOUT_SECONDS + 1800
BACKUP_TASK_TIME_LIMIT_SECONDS = BACKUP_TASK_SOFT_TIME_LIMIT_SECONDS + 600
BACKUP_JOB_LOCK_TTL_SECONDS = BACKUP_TASK_TIME_LIMIT_SECONDS + 600

# Alerting
BACKUP_ALERT_EMAILS = env_list("BACKUP_ALERT_EMAILS")
BACKUP_ALERT_WEBHOOK_URL = os.getenv("BACKUP_ALERT_WEBHOOK_URL", "")
BACKUP_ALERT_COOLDOWN_MINUTES = env_int("BACKUP_ALERT_COOLDOWN_MINUTES", 60)
BACKUP_NOTIFY_ON_SUCCESS = env_bool("BACKUP_NOTIFY_ON_SUCCESS", True)
BACKUP_MAX_FULL_AGE_HOURS = env_int("BACKUP_MAX_FULL_AGE_HOURS", 26)
BACKUP_HEALTH_INCREMENTAL_FAILURE_THRESHOLD = env_int("BACKUP_HEALTH_INCREMENTAL_FAILURE_THRESHOLD", 5)

LOG_DIR = Path(os.getenv("LOG_DIR", str(BASE_DIR / "logs")))
