"""
Database models for the users app.

This module defines the enrolled identities, their work schedules, the attendance
records produced by the decision pipeline, and the append-only audit trail.
"""

from __future__ import annotations

import datetime
from typing import Optional

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone


class User(AbstractUser):
    """An identity enrolled in the attendance system."""

    class Role(models.TextChoices):
        EMPLOYEE = "employee", "Employee"
        ADMIN = "admin", "Admin"
        SUPER_ADMIN = "super_admin", "Super admin"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"
        SUSPENDED = "suspended", "Suspended"

    employee_id = models.CharField(
        max_length=64,
        unique=True,
        help_text="Organisation-issued employee identifier.",
    )
    role = models.CharField(max_length=16, choices=Role.choices, default=Role.EMPLOYEE)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.ACTIVE,
        db_index=True,
        help_text="Only active users may authenticate or submit attendance.",
    )
    department = models.CharField(max_length=100, blank=True)
    position = models.CharField(max_length=100, blank=True)
    phone = models.CharField(max_length=32, blank=True)

    REQUIRED_FIELDS = ["email", "employee_id"]

    class Meta:
        indexes = [
            models.Index(fields=["department"], name="users_user_department_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.username} ({self.employee_id})"

    def save(self, *args, **kwargs) -> None:
        """Keep Django's ``is_active`` flag in step with the lifecycle status."""

        self.is_active = self.status == self.Status.ACTIVE
        if self.role in (self.Role.ADMIN, self.Role.SUPER_ADMIN):
            self.is_staff = True
        super().save(*args, **kwargs)

    @property
    def is_admin(self) -> bool:
        return self.role in (self.Role.ADMIN, self.Role.SUPER_ADMIN) or self.is_superuser

    @property
    def is_super_admin(self) -> bool:
        return self.role == self.Role.SUPER_ADMIN or self.is_superuser


def default_site_radius() -> int:
    """Geofence radius in meters for schedules created without one."""

    return int(getattr(settings, "RECOGNITION_DEFAULT_SITE_RADIUS_METERS", 100))


class WorkScheduleQuerySet(models.QuerySet["WorkSchedule"]):
    """Helpers for resolving the schedule in force at a given instant."""

    def effective_at(self, moment: datetime.datetime) -> "WorkScheduleQuerySet":
        """Return active schedules whose effective range covers ``moment``'s local date."""

        day = local_calendar_day(moment)
        return (
            self.filter(is_active=True)
            .filter(Q(effective_from__isnull=True) | Q(effective_from__lte=day))
            .filter(Q(effective_to__isnull=True) | Q(effective_to__gte=day))
            .order_by("-created_at", "-id")
        )


class WorkSchedule(models.Model):
    """A user's expected work site and hours, used for geofence validation."""

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="work_schedules",
    )
    schedule_name = models.CharField(max_length=100)
    start_time = models.TimeField()
    end_time = models.TimeField()
    working_days = models.JSONField(
        default=list,
        help_text="ISO weekdays the schedule applies to (1 = Monday).",
    )
    latitude = models.DecimalField(
        max_digits=10,
        decimal_places=8,
        null=True,
        blank=True,
        validators=[MinValueValidator(-90), MaxValueValidator(90)],
    )
    longitude = models.DecimalField(
        max_digits=11,
        decimal_places=8,
        null=True,
        blank=True,
        validators=[MinValueValidator(-180), MaxValueValidator(180)],
    )
    location_radius = models.PositiveIntegerField(
        default=default_site_radius,
        help_text="Allowed distance from the site in meters.",
    )
    location_name = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True, db_index=True)
    effective_from = models.DateField(null=True, blank=True)
    effective_to = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    objects: WorkScheduleQuerySet = WorkScheduleQuerySet.as_manager()

    class Meta:
        indexes = [
            models.Index(fields=["user", "is_active"], name="users_schedule_user_act_idx"),
            models.Index(
                fields=["effective_from", "effective_to"], name="users_schedule_range_idx"
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user.username} - {self.schedule_name}"

    @property
    def has_site(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class AttendanceRecord(models.Model):
    """One check-in or check-out event produced by the decision pipeline."""

    class Type(models.TextChoices):
        CHECK_IN = "check_in", "Check-in"
        CHECK_OUT = "check_out", "Check-out"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"
        FLAGGED = "flagged", "Flagged"

    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name="attendance_records",
    )
    type = models.CharField(max_length=16, choices=Type.choices)
    timestamp = models.DateTimeField(
        db_index=True,
        help_text="Capture time embedded in the submission (may predate arrival when offline).",
    )
    attendance_date = models.DateField(
        db_index=True,
        help_text="Local calendar day of the capture time.",
    )
    latitude = models.DecimalField(max_digits=10, decimal_places=8, null=True, blank=True)
    longitude = models.DecimalField(max_digits=11, decimal_places=8, null=True, blank=True)
    location_address = models.CharField(max_length=255, blank=True)
    accuracy = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="GPS accuracy in meters.",
    )
    confidence_score = models.DecimalField(
        max_digits=5,
        decimal_places=4,
        null=True,
        blank=True,
        help_text="Best template similarity for the submitted face.",
    )
    matched_template_id = models.BigIntegerField(null=True, blank=True)
    liveness_passed = models.BooleanField(default=False)
    liveness_data = models.JSONField(null=True, blank=True)
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    rejection_reason = models.TextField(null=True, blank=True)
    approved_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="reviewed_attendance_records",
    )
    approved_at = models.DateTimeField(null=True, blank=True)
    is_offline = models.BooleanField(default=False, db_index=True)
    synced_at = models.DateTimeField(null=True, blank=True)
    device_info = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-timestamp"]
        constraints = [
            models.UniqueConstraint(
                fields=["user", "type", "attendance_date"],
                condition=Q(status="approved"),
                name="unique_approved_attendance_per_day",
            ),
        ]
        indexes = [
            models.Index(
                fields=["user", "attendance_date"], name="users_attendance_user_date_idx"
            ),
            models.Index(fields=["status", "timestamp"], name="users_attendance_status_idx"),
        ]

    def __str__(self) -> str:
        return (
            f"{self.user.username} - {self.get_type_display()} - {self.status} "
            f"@ {self.timestamp:%Y-%m-%d %H:%M:%S}"
        )

    def save(self, *args, **kwargs) -> None:
        if self.attendance_date is None and self.timestamp is not None:
            self.attendance_date = local_calendar_day(self.timestamp)
        super().save(*args, **kwargs)

    @property
    def display_status(self) -> str:
        """Status as shown to the submitting employee."""

        if self.status == self.Status.FLAGGED:
            return "pending review"
        return self.status


def local_calendar_day(moment: datetime.datetime) -> datetime.date:
    """Return the local (``TIME_ZONE``) calendar day that contains ``moment``."""

    if timezone.is_naive(moment):
        moment = timezone.make_aware(moment)
    return timezone.localtime(moment).date()


class ImmutableRecordError(Exception):
    """Raised on attempts to modify or delete an audit log entry."""


class AuditLogEntry(models.Model):
    """Append-only compliance record of a decision or state transition."""

    class Severity(models.TextChoices):
        LOW = "low", "Low"
        MEDIUM = "medium", "Medium"
        HIGH = "high", "High"
        CRITICAL = "critical", "Critical"

    actor = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_entries",
        help_text="User who performed the action; empty for system actions.",
    )
    action = models.CharField(max_length=64, db_index=True)
    resource_type = models.CharField(max_length=64, blank=True)
    resource_id = models.CharField(max_length=64, blank=True)
    old_values = models.JSONField(null=True, blank=True)
    new_values = models.JSONField(null=True, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)
    device_id = models.CharField(max_length=128, blank=True)
    severity = models.CharField(
        max_length=16,
        choices=Severity.choices,
        default=Severity.LOW,
        db_index=True,
    )
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(
                fields=["resource_type", "resource_id"], name="users_audit_resource_idx"
            ),
        ]

    def __str__(self) -> str:
        actor: Optional[str] = self.actor.username if self.actor else "system"
        return f"{self.action} by {actor} [{self.severity}]"

    def save(self, *args, **kwargs) -> None:
        if not self._state.adding:
            raise ImmutableRecordError("Audit log entries cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Audit log entries cannot be deleted.")
