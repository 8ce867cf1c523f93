"""
App configuration for the backups app.
"""

from django.apps import AppConfig


class BackupsConfig(AppConfig):
    """Configuration for the backups app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.backups"
    verbose_name = "Backup & Disaster Recovery"

    def ready(self):
        """
        Validate backup settings and register the worker shutdown handler.
        """
        # Imported here to avoid loading models before the registry is ready
        from .scheduling import validate_backup_settings

        validate_backup_settings()
