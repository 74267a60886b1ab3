"""Manual admin override of attendance decisions."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from users.models import AttendanceRecord, User

from . import monitoring
from .audit import AuditRecorder, RequestContext, Severity
from .capabilities import Notifier
from .errors import (
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    InputError,
    NoCheckInYet,
    NotPermitted,
    RecordNotFound,
)
from .notifications import ADMIN_TOPIC, safe_publish
from .pipeline import load_user

logger = logging.getLogger(__name__)

APPROVE = "approve"
REJECT = "reject"

_APPROVABLE = {
    AttendanceRecord.Status.PENDING,
    AttendanceRecord.Status.FLAGGED,
    AttendanceRecord.Status.REJECTED,
}


class AttendanceReviewService:
    """Approve or reject stored records; every transition is audited."""

    def __init__(
        self,
        *,
        audit: AuditRecorder,
        notifier: Notifier,
        clock: Callable = timezone.now,
    ) -> None:
        self.audit = audit
        self.notifier = notifier
        self.clock = clock

    def review(
        self,
        record_id,
        admin_id,
        decision: str,
        reason: Optional[str] = None,
        *,
        context: Optional[RequestContext] = None,
    ) -> AttendanceRecord:
        """Apply ``decision`` (``approve`` or ``reject``) to a record.

        Approval is allowed from ``pending``, ``flagged`` and ``rejected`` and clears
        the rejection reason; a check-out additionally needs an approved check-in on
        the same day. Rejection is allowed from any state and needs a non-empty
        reason; an approved check-in cannot be rejected while its day still has an
        approved check-out.
        """

        if decision not in (APPROVE, REJECT):
            raise InputError("Decision must be approve or reject.", details={"field": "decision"})
        reason = (reason or "").strip()
        if decision == REJECT and not reason:
            raise InputError(
                "A reason is required to reject a record.", details={"field": "reason"}
            )

        admin = load_user(admin_id)
        if not admin.is_admin or admin.status != User.Status.ACTIVE:
            raise NotPermitted("Only administrators may review attendance.")

        with transaction.atomic():
            try:
                record = AttendanceRecord.objects.select_for_update().get(pk=record_id)
            except (AttendanceRecord.DoesNotExist, ValueError, TypeError) as exc:
                raise RecordNotFound() from exc

            old_status = record.status
            old_reason = record.rejection_reason
            if decision == APPROVE:
                if record.status not in _APPROVABLE:
                    raise InputError(
                        f"Cannot approve a record that is {record.status}.",
                        details={"status": record.status},
                    )
                if record.type == AttendanceRecord.Type.CHECK_OUT:
                    self._require_approved_check_in(record)
                record.status = AttendanceRecord.Status.APPROVED
                record.rejection_reason = None
            else:
                if (
                    record.type == AttendanceRecord.Type.CHECK_IN
                    and record.status == AttendanceRecord.Status.APPROVED
                ):
                    self._refuse_orphaning_check_out(record)
                record.status = AttendanceRecord.Status.REJECTED
                record.rejection_reason = reason
            record.approved_by = admin
            record.approved_at = self.clock()

            try:
                with transaction.atomic():
                    record.save(
                        update_fields=[
                            "status",
                            "rejection_reason",
                            "approved_by",
                            "approved_at",
                            "updated_at",
                        ]
                    )
            except IntegrityError as exc:
                duplicate = (
                    AlreadyCheckedIn
                    if record.type == AttendanceRecord.Type.CHECK_IN
                    else AlreadyCheckedOut
                )
                raise duplicate(
                    "Another approved record already exists for this day.",
                    details={"date": record.attendance_date.isoformat()},
                ) from exc

        monitoring.record_review(decision)
        logger.info(
            "Attendance record %s %s by admin %s (%s -> %s)",
            record.pk,
            decision,
            admin.pk,
            old_status,
            record.status,
        )
        self.audit.record(
            admin,
            "attendance_approved" if decision == APPROVE else "attendance_rejected",
            resource_type="attendance_record",
            resource_id=record.pk,
            old_values={"status": old_status, "rejection_reason": old_reason},
            new_values={"status": record.status, "rejection_reason": record.rejection_reason},
            context=context,
            severity=Severity.MEDIUM,
            description=reason,
        )
        safe_publish(
            self.notifier,
            ADMIN_TOPIC,
            {
                "type": "attendance_reviewed",
                "recordId": record.pk,
                "userId": record.user_id,
                "status": record.status,
                "reviewedBy": admin.pk,
            },
        )
        return record

    @staticmethod
    def _same_day_approved(record: AttendanceRecord, attendance_type: str):
        return (
            AttendanceRecord.objects.select_for_update()
            .filter(
                user_id=record.user_id,
                type=attendance_type,
                attendance_date=record.attendance_date,
                status=AttendanceRecord.Status.APPROVED,
            )
            .exclude(pk=record.pk)
            .first()
        )

    def _require_approved_check_in(self, record: AttendanceRecord) -> None:
        """A check-out may only be approved on a day that has an approved check-in."""

        if self._same_day_approved(record, AttendanceRecord.Type.CHECK_IN) is None:
            raise NoCheckInYet(
                "No approved check-in exists for this day.",
                details={"date": record.attendance_date.isoformat()},
            )

    def _refuse_orphaning_check_out(self, record: AttendanceRecord) -> None:
        check_out = self._same_day_approved(record, AttendanceRecord.Type.CHECK_OUT)
        if check_out is not None:
            raise InputError(
                "Reject the approved check-out for this day before its check-in.",
                details={"check_out_id": check_out.pk, "date": record.attendance_date.isoformat()},
            )


__all__ = ["APPROVE", "AttendanceReviewService", "REJECT"]
