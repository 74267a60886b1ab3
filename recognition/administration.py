"""Administrative changes that shape attendance decisions: work schedules and user status."""

from __future__ import annotations

import datetime
import logging
from typing import Any, Iterable, Optional

from django.conf import settings
from django.db import transaction

from users.models import User, WorkSchedule

from .audit import AuditRecorder, RequestContext, Severity
from .errors import InputError, NotPermitted, UserNotFound
from .geofence import validate_coordinates
from .pipeline import load_user

logger = logging.getLogger(__name__)


def _require_admin(admin_id) -> User:
    admin = load_user(admin_id)
    if not admin.is_admin or admin.status != User.Status.ACTIVE:
        raise NotPermitted("Only administrators may manage users and schedules.")
    return admin


def _working_days(days: Iterable[Any]) -> list[int]:
    cleaned = []
    for day in days:
        if isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= 7:
            raise InputError(
                "Working days must be ISO weekdays between 1 and 7.",
                details={"field": "working_days"},
            )
        if day not in cleaned:
            cleaned.append(day)
    if not cleaned:
        raise InputError("At least one working day is required.", details={"field": "working_days"})
    return sorted(cleaned)


class AdministrationService:
    """Create work schedules and change user status; both are audited."""

    def __init__(self, *, audit: AuditRecorder) -> None:
        self.audit = audit

    def create_work_schedule(
        self,
        admin_id,
        user_id,
        *,
        schedule_name: str,
        start_time: datetime.time,
        end_time: datetime.time,
        working_days: Iterable[int],
        latitude: Any = None,
        longitude: Any = None,
        location_radius: Optional[int] = None,
        location_name: str = "",
        effective_from: Optional[datetime.date] = None,
        effective_to: Optional[datetime.date] = None,
        context: Optional[RequestContext] = None,
    ) -> WorkSchedule:
        """Store a new active schedule for ``user_id``.

        A site needs both coordinates. Without a radius the site default from
        ``RECOGNITION_DEFAULT_SITE_RADIUS_METERS`` applies.
        """

        admin = _require_admin(admin_id)
        try:
            user = User.objects.get(pk=user_id)
        except (User.DoesNotExist, ValueError, TypeError) as exc:
            raise UserNotFound() from exc

        schedule_name = (schedule_name or "").strip()
        if not schedule_name:
            raise InputError("A schedule name is required.", details={"field": "schedule_name"})
        days = _working_days(working_days)
        if (latitude is None) != (longitude is None):
            raise InputError(
                "Latitude and longitude must be provided together.",
                details={"field": "latitude" if latitude is None else "longitude"},
            )
        if latitude is not None:
            validate_coordinates(latitude, longitude)
        if location_radius is None:
            location_radius = settings.RECOGNITION_DEFAULT_SITE_RADIUS_METERS
        elif location_radius < 1:
            raise InputError(
                "Location radius must be at least one meter.", details={"field": "location_radius"}
            )
        if effective_from and effective_to and effective_from > effective_to:
            raise InputError(
                "The schedule must start before it ends.", details={"field": "effective_to"}
            )

        with transaction.atomic():
            schedule = WorkSchedule.objects.create(
                user=user,
                schedule_name=schedule_name,
                start_time=start_time,
                end_time=end_time,
                working_days=days,
                latitude=latitude,
                longitude=longitude,
                location_radius=location_radius,
                location_name=location_name or "",
                effective_from=effective_from,
                effective_to=effective_to,
            )

        logger.info("Work schedule %s created for user %s by admin %s", schedule.pk, user.pk, admin.pk)
        self.audit.record(
            admin,
            "work_schedule_created",
            resource_type="work_schedule",
            resource_id=schedule.pk,
            new_values={
                "user_id": user.pk,
                "schedule_name": schedule.schedule_name,
                "start_time": schedule.start_time,
                "end_time": schedule.end_time,
            },
            context=context,
            severity=Severity.LOW,
        )
        return schedule

    def change_user_status(
        self,
        user_id,
        admin_id,
        status: str,
        reason: Optional[str] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> User:
        """Move a user to ``active``, ``inactive`` or ``suspended``.

        Only active users may submit attendance, so this is how an administrator
        locks someone out. Administrators cannot change their own status.
        """

        if status not in User.Status.values:
            raise InputError(
                "Status must be active, inactive or suspended.", details={"field": "status"}
            )
        admin = _require_admin(admin_id)
        reason = (reason or "").strip() or None

        with transaction.atomic():
            try:
                user = User.objects.select_for_update().get(pk=user_id)
            except (User.DoesNotExist, ValueError, TypeError) as exc:
                raise UserNotFound() from exc
            if user.pk == admin.pk:
                raise InputError("Administrators cannot change their own status.")
            if user.is_super_admin and not admin.is_super_admin:
                raise NotPermitted("Only super administrators may change a super administrator.")
            old_status = user.status
            user.status = status
            user.save(update_fields=["status", "is_active"])

        logger.info(
            "User %s status changed by admin %s (%s -> %s)", user.pk, admin.pk, old_status, status
        )
        self.audit.record(
            admin,
            "user_status_changed",
            resource_type="user",
            resource_id=user.pk,
            old_values={"status": old_status},
            new_values={"status": status, "reason": reason},
            context=context,
            severity=Severity.MEDIUM,
            description=reason or "",
        )
        return user


__all__ = ["AdministrationService"]
