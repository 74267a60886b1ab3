"""
App configuration for the recognition app.

``ready()`` builds the attendance service once per process from the capability
bindings in settings; request handlers read it from this config.
"""

from django.apps import AppConfig, apps


class RecognitionConfig(AppConfig):
    """Configuration class for the recognition app."""

    name = "recognition"
    verbose_name = "Face recognition & attendance decisions"
    default_auto_field = "django.db.models.BigAutoField"

    attendance_service = None

    def ready(self) -> None:
        from .services import build_attendance_service

        self.attendance_service = build_attendance_service()


def get_attendance_service():
    """Return the process-wide :class:`~recognition.services.AttendanceService`."""

    return apps.get_app_config("recognition").attendance_service
