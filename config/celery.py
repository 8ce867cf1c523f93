"""
Celery configuration for the safekeep backup service.
"""

import os

from celery import Celery

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.development")

app = Celery("safekeep")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()


@app.on_after_configure.connect
def setup_backup_schedule(sender, **kwargs):
    """
    Register the backup jobs with Celery beat.

    The schedule is read from the BACKUP_*_CRON settings, so it can only be
    built once Django settings are importable.
    """
    from apps.backups.scheduling import build_beat_schedule

    for name, entry in build_beat_schedule().items():
        sender.add_periodic_task(
            entry["schedule"],
            sender.signature(entry["task"]),
            name=name,
            **entry["options"],
        )
