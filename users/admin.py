"""
Admin site configuration for the users app.

Registers identities, work schedules, attendance records and the audit trail. Attendance
records and audit entries are read-only here: status changes go through the review
workflow so that every transition is audited.
"""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as DjangoUserAdmin

from .models import AttendanceRecord, AuditLogEntry, User, WorkSchedule


@admin.register(User)
class UserAdmin(DjangoUserAdmin):
    """Expose the attendance-specific identity fields alongside Django's defaults."""

    list_display = ("username", "employee_id", "role", "status", "department", "last_login")
    list_filter = ("role", "status", "department")
    search_fields = ("username", "employee_id", "email", "first_name", "last_name")
    fieldsets = DjangoUserAdmin.fieldsets + (
        (
            "Attendance",
            {"fields": ("employee_id", "role", "status", "department", "position", "phone")},
        ),
    )
    add_fieldsets = DjangoUserAdmin.add_fieldsets + (
        ("Attendance", {"fields": ("employee_id", "role", "status")}),
    )


@admin.register(WorkSchedule)
class WorkScheduleAdmin(admin.ModelAdmin):
    list_display = (
        "user",
        "schedule_name",
        "location_name",
        "location_radius",
        "is_active",
        "effective_from",
        "effective_to",
    )
    list_filter = ("is_active",)
    search_fields = ("user__username", "user__employee_id", "schedule_name", "location_name")


@admin.register(AttendanceRecord)
class AttendanceRecordAdmin(admin.ModelAdmin):
    """Read-only view over attendance decisions."""

    list_display = (
        "timestamp",
        "user",
        "type",
        "status",
        "confidence_score",
        "liveness_passed",
        "is_offline",
    )
    list_filter = ("type", "status", "liveness_passed", "is_offline")
    search_fields = ("user__username", "user__employee_id", "rejection_reason")
    ordering = ("-timestamp",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AuditLogEntry)
class AuditLogEntryAdmin(admin.ModelAdmin):
    """Audit entries are append-only."""

    list_display = ("created_at", "action", "actor", "resource_type", "resource_id", "severity")
    list_filter = ("severity", "action", "resource_type")
    search_fields = ("action", "resource_id", "actor__username")
    ordering = ("-created_at",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
