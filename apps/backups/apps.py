"""
App configuration for the backups app.
"""

from django.apps import AppConfig


class BackupsConfig(AppConfig):
    """Configuration for the backups app."""

    name = "apps.backups"
    verbose_name = "Database Backups"
