"""Composition root for the attendance decision services.

``build_attendance_service`` resolves every capability from its settings dotted
path once; :class:`recognition.apps.RecognitionConfig` calls it at startup and
request handlers receive the resulting :class:`AttendanceService` instead of
reaching for module-level globals.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from django.conf import settings
from django.utils import timezone
from django.utils.module_loading import import_string

from users.models import AttendanceRecord, User, WorkSchedule, local_calendar_day

from .administration import AdministrationService
from .audit import AuditRecorder, RequestContext
from .enrollment import FaceEnrollmentService, VerificationResult
from .errors import AttendanceError, DependencyError
from .liveness import LivenessAggregator
from .models import FaceTemplate
from .pipeline import AttendanceDecisionPipeline, AttendanceSubmission, load_user
from .review import AttendanceReviewService
from .vault import TemplateVault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    decoder: Any
    detector: Any
    extractor: Any
    liveness_model: Any
    texture_analyzer: Any
    depth_analyzer: Any
    notifier: Any


@dataclass(frozen=True)
class SyncOutcome:
    """Result of replaying one queued offline submission."""

    index: int
    record: Optional[AttendanceRecord] = None
    error: Optional[AttendanceError] = None

    def as_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"index": self.index, **self.error.as_dict()}
        return {
            "index": self.index,
            "success": True,
            "id": self.record.pk,
            "status": self.record.display_status,
        }


class AttendanceService:
    """Entry points exposed to request handlers and management commands."""

    def __init__(
        self,
        *,
        pipeline: AttendanceDecisionPipeline,
        enrollment: FaceEnrollmentService,
        review: AttendanceReviewService,
        administration: AdministrationService,
        clock: Callable[[], datetime.datetime] = timezone.now,
    ) -> None:
        self.pipeline = pipeline
        self.enrollment = enrollment
        self.reviewer = review
        self.administration = administration
        self.clock = clock

    def submit_attendance(
        self,
        user_id,
        image_bytes: bytes,
        coordinates: Mapping[str, Any],
        timestamp: Optional[datetime.datetime],
        device_metadata: Optional[Mapping[str, Any]] = None,
        is_offline: bool = False,
        attendance_type: str = AttendanceRecord.Type.CHECK_IN,
        context: Optional[RequestContext] = None,
    ) -> AttendanceRecord:
        submission = AttendanceSubmission(
            user_id=user_id,
            attendance_type=attendance_type,
            image_bytes=image_bytes,
            latitude=coordinates.get("latitude"),
            longitude=coordinates.get("longitude"),
            accuracy=coordinates.get("accuracy"),
            location_address=coordinates.get("address") or "",
            timestamp=timestamp,
            device_metadata=dict(device_metadata or {}),
            is_offline=is_offline,
        )
        return self.pipeline.submit(submission, context)

    def sync_offline(
        self,
        user_id,
        submissions: Iterable[Mapping[str, Any]],
        context: Optional[RequestContext] = None,
    ) -> list[SyncOutcome]:
        """Replay queued submissions in order; each one is decided independently.

        Dependency failures abort the batch so the client keeps the remainder
        queued for a later retry.
        """

        ordered = sorted(
            enumerate(submissions),
            key=lambda item: (item[1].get("timestamp") is None, item[1].get("timestamp")),
        )
        outcomes: list[SyncOutcome] = []
        for index, item in ordered:
            try:
                record = self.submit_attendance(
                    user_id,
                    item.get("image_bytes", b""),
                    item.get("coordinates") or {},
                    item.get("timestamp"),
                    item.get("device_metadata"),
                    is_offline=True,
                    attendance_type=item.get("type", AttendanceRecord.Type.CHECK_IN),
                    context=context,
                )
            except DependencyError:
                raise
            except AttendanceError as exc:
                outcomes.append(SyncOutcome(index=index, error=exc))
            else:
                outcomes.append(SyncOutcome(index=index, record=record))
        logger.info("Synced %d offline submissions for user %s", len(outcomes), user_id)
        return sorted(outcomes, key=lambda outcome: outcome.index)

    def today_status(self, user_id, at: Optional[datetime.datetime] = None) -> dict[str, Any]:
        """Today's approved check-in / check-out for ``user_id`` and a summary status."""

        user = load_user(user_id)
        day = local_calendar_day(at or self.clock())
        records = {
            record.type: record
            for record in AttendanceRecord.objects.filter(
                user=user,
                attendance_date=day,
                status=AttendanceRecord.Status.APPROVED,
            )
        }
        check_in = records.get(AttendanceRecord.Type.CHECK_IN)
        check_out = records.get(AttendanceRecord.Type.CHECK_OUT)
        if check_in and check_out:
            status = "completed"
        elif check_in:
            status = "checked_in"
        else:
            status = "not_checked_in"
        return {"date": day, "check_in": check_in, "check_out": check_out, "status": status}

    def enroll_template(
        self,
        user_id,
        image_bytes: bytes,
        make_primary: bool = False,
        actor=None,
        context: Optional[RequestContext] = None,
    ) -> FaceTemplate:
        return self.enrollment.enroll(
            user_id, image_bytes, make_primary=make_primary, actor=actor, context=context
        )

    def verify_identity(
        self, user_id, image_bytes: bytes, actor=None, context: Optional[RequestContext] = None
    ) -> VerificationResult:
        return self.enrollment.verify(user_id, image_bytes, actor=actor, context=context)

    def review_attendance(
        self,
        record_id,
        admin_id,
        decision: str,
        reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> AttendanceRecord:
        return self.reviewer.review(record_id, admin_id, decision, reason, context=context)

    def list_templates(self, user_id) -> list[FaceTemplate]:
        return self.enrollment.list_templates(user_id)

    def delete_template(self, template_id, actor=None, context: Optional[RequestContext] = None):
        return self.enrollment.delete_template(template_id, actor=actor, context=context)

    def set_primary_template(
        self, template_id, actor=None, context: Optional[RequestContext] = None
    ) -> FaceTemplate:
        return self.enrollment.set_primary(template_id, actor=actor, context=context)

    def create_work_schedule(
        self, admin_id, user_id, context: Optional[RequestContext] = None, **fields
    ) -> WorkSchedule:
        return self.administration.create_work_schedule(
            admin_id, user_id, context=context, **fields
        )

    def change_user_status(
        self,
        user_id,
        admin_id,
        status: str,
        reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> User:
        return self.administration.change_user_status(
            user_id, admin_id, status, reason, context=context
        )


def _instantiate(setting_name: str):
    path = getattr(settings, setting_name)
    factory = import_string(path) if isinstance(path, str) else path
    return factory() if callable(factory) else factory


def load_capabilities() -> Capabilities:
    return Capabilities(
        decoder=_instantiate("RECOGNITION_IMAGE_DECODER"),
        detector=_instantiate("RECOGNITION_FACE_DETECTOR"),
        extractor=_instantiate("RECOGNITION_FEATURE_EXTRACTOR"),
        liveness_model=_instantiate("RECOGNITION_LIVENESS_MODEL"),
        texture_analyzer=_instantiate("RECOGNITION_TEXTURE_ANALYZER"),
        depth_analyzer=_instantiate("RECOGNITION_DEPTH_ANALYZER"),
        notifier=_instantiate("RECOGNITION_NOTIFIER"),
    )


def build_attendance_service(
    capabilities: Optional[Capabilities] = None,
    *,
    vault: Optional[TemplateVault] = None,
    audit: Optional[AuditRecorder] = None,
    clock: Callable[[], datetime.datetime] = timezone.now,
) -> AttendanceService:
    """Wire the pipeline, enrollment and review services around one set of capabilities."""

    caps = capabilities or load_capabilities()
    vault = vault or TemplateVault()
    audit = audit or AuditRecorder()
    aggregator = LivenessAggregator(caps.liveness_model, caps.texture_analyzer, caps.depth_analyzer)

    pipeline = AttendanceDecisionPipeline(
        decoder=caps.decoder,
        detector=caps.detector,
        extractor=caps.extractor,
        aggregator=aggregator,
        vault=vault,
        audit=audit,
        notifier=caps.notifier,
        clock=clock,
    )
    enrollment = FaceEnrollmentService(
        decoder=caps.decoder,
        detector=caps.detector,
        extractor=caps.extractor,
        aggregator=aggregator,
        vault=vault,
        audit=audit,
    )
    review = AttendanceReviewService(audit=audit, notifier=caps.notifier, clock=clock)
    return AttendanceService(
        pipeline=pipeline,
        enrollment=enrollment,
        review=review,
        administration=AdministrationService(audit=audit),
        clock=clock,
    )


__all__ = [
    "AttendanceService",
    "Capabilities",
    "SyncOutcome",
    "build_attendance_service",
    "load_capabilities",
]
