"""App configuration for the users app (identities, schedules, attendance and audit)."""

from django.apps import AppConfig


class UsersConfig(AppConfig):
    """Register the users app, which owns the attendance system's persisted entities."""

    name = "users"
    verbose_name = "Users & Attendance"
    default_auto_field = "django.db.models.BigAutoField"
