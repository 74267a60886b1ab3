"""Attendance integrity decision pipeline.

A submission passes through a fixed sequence of checks and short-circuits on
the first hard failure::

    input -> duplicate-check -> face presence -> liveness -> match -> geofence -> finalize

Geofence violations are soft: the record is stored as ``flagged`` for manual
review. Every other failure raises a :class:`~recognition.errors.DecisionError`
(audited and counted) or a :class:`~recognition.errors.DependencyError`
(fails closed). The per-day uniqueness of approved records is enforced by the
store; a constraint violation on insert is translated into the matching
duplicate error.
"""

from __future__ import annotations

import datetime
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

import numpy as np
from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from users.models import AttendanceRecord, User, local_calendar_day

from . import monitoring
from .audit import AuditRecorder, RequestContext, Severity
from .capabilities import FaceDetection, FaceDetector, FeatureExtractor, ImageDecoder, Notifier
from .errors import (
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    DecisionError,
    DegenerateVectorError,
    DependencyError,
    DetectionUnavailableError,
    FaceNotRecognized,
    FeatureExtractionError,
    InputError,
    LivenessFailed,
    NoCheckInYet,
    NoEnrolledTemplate,
    NoFaceDetected,
    UserNotActive,
    UserNotFound,
)
from .geofence import LocationCheck, validate_coordinates, validate_location
from .liveness import LivenessAggregator, LivenessReport
from .matcher import BestMatch, as_feature_vector, best_match
from .models import FaceTemplate
from .notifications import ADMIN_TOPIC, safe_publish
from .telemetry import record_breadcrumb
from .timeouts import call_with_timeout, retry_read
from .vault import TemplateVault

logger = logging.getLogger(__name__)

CHECK_IN = AttendanceRecord.Type.CHECK_IN
CHECK_OUT = AttendanceRecord.Type.CHECK_OUT

# Capture times further ahead of the server clock than this are rejected.
MAX_FUTURE_SKEW = datetime.timedelta(minutes=5)

_DENIAL_SEVERITY = {
    LivenessFailed: Severity.HIGH,
    FaceNotRecognized: Severity.MEDIUM,
}


@dataclass(frozen=True)
class AttendanceSubmission:
    """A check-in or check-out event as received from a client."""

    user_id: Any
    attendance_type: str
    image_bytes: bytes
    latitude: Any
    longitude: Any
    timestamp: Optional[datetime.datetime] = None
    accuracy: Optional[float] = None
    location_address: str = ""
    device_metadata: Mapping[str, Any] = field(default_factory=dict)
    is_offline: bool = False


@dataclass(frozen=True)
class TemplateMatch:
    best: Optional[BestMatch]
    template_count: int
    skipped: tuple[Any, ...] = ()


# --- Reusable steps --------------------------------------------------------


def select_face(detections: Sequence[FaceDetection], min_confidence: float) -> FaceDetection:
    """Highest-confidence detection at or above ``min_confidence``; first on ties."""

    selected: Optional[FaceDetection] = None
    for detection in detections or ():
        confidence = float(detection.confidence)
        if confidence < min_confidence:
            continue
        if selected is None or confidence > float(selected.confidence):
            selected = detection
    if selected is None:
        raise NoFaceDetected(details={"detections": len(detections or ())})
    return selected


def extract_probe(extractor: FeatureExtractor, image, region) -> np.ndarray:
    """Run feature extraction under the model deadline and reject degenerate output."""

    raw = call_with_timeout(
        extractor.extract,
        image,
        region,
        error_cls=FeatureExtractionError,
        label="feature_extractor",
    )
    try:
        probe = as_feature_vector(raw)
    except (TypeError, ValueError) as exc:
        raise FeatureExtractionError("Feature extractor returned an unusable vector.") from exc
    if not np.all(np.isfinite(probe)) or float(np.linalg.norm(probe)) == 0.0:
        raise FeatureExtractionError("Feature extractor returned a degenerate vector.")
    return probe


def load_templates(user) -> list[FaceTemplate]:
    return retry_read(
        lambda: list(FaceTemplate.objects.for_user(user)),
        label="store.templates",
    )


def match_templates(
    vault: TemplateVault, probe: np.ndarray, templates: Sequence[FaceTemplate]
) -> TemplateMatch:
    """Compare ``probe`` against every template; undecryptable templates fail closed."""

    candidates = [
        (template.pk, vault.decrypt_template(bytes(template.encrypted_encoding)))
        for template in templates
    ]
    try:
        best, skipped = best_match(probe, candidates)
    except DegenerateVectorError as exc:
        raise FeatureExtractionError("Feature extractor returned a degenerate vector.") from exc
    if skipped:
        logger.warning("Skipped %d degenerate face templates: %s", len(skipped), skipped)
    return TemplateMatch(best=best, template_count=len(templates), skipped=tuple(skipped))


def load_user(user_id) -> User:
    try:
        return retry_read(lambda: User.objects.get(pk=user_id), label="store.users")
    except (User.DoesNotExist, ValueError, TypeError) as exc:
        raise UserNotFound() from exc


def ensure_active(user: User) -> None:
    if user.status != User.Status.ACTIVE:
        raise UserNotActive(details={"status": user.status})


@contextmanager
def _stage(name: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        monitoring.observe_stage_duration(name, time.perf_counter() - started)


class AttendanceDecisionPipeline:
    """Decide, persist, audit and announce attendance submissions."""

    def __init__(
        self,
        *,
        decoder: ImageDecoder,
        detector: FaceDetector,
        extractor: FeatureExtractor,
        aggregator: LivenessAggregator,
        vault: TemplateVault,
        audit: AuditRecorder,
        notifier: Notifier,
        attendance_threshold: Optional[float] = None,
        min_detection_confidence: Optional[float] = None,
        clock: Callable[[], datetime.datetime] = timezone.now,
    ) -> None:
        self.decoder = decoder
        self.detector = detector
        self.extractor = extractor
        self.aggregator = aggregator
        self.vault = vault
        self.audit = audit
        self.notifier = notifier
        self.attendance_threshold = float(
            attendance_threshold
            if attendance_threshold is not None
            else getattr(settings, "RECOGNITION_ATTENDANCE_THRESHOLD", 0.8)
        )
        self.min_detection_confidence = float(
            min_detection_confidence
            if min_detection_confidence is not None
            else getattr(settings, "RECOGNITION_MIN_DETECTION_CONFIDENCE", 0.7)
        )
        self.clock = clock

    # -- entry point -------------------------------------------------------

    def submit(
        self, submission: AttendanceSubmission, context: Optional[RequestContext] = None
    ) -> AttendanceRecord:
        """Run every check for ``submission`` and return the stored record.

        Raises:
            InputError: malformed submission; no model has been called.
            DecisionError: the submission was denied; nothing was stored.
            DependencyError: a model or the store failed; nothing was stored.
        """

        arrival = self.clock()
        attendance_type = self._validate_type(submission.attendance_type)
        user = load_user(submission.user_id)
        ensure_active(user)
        latitude, longitude = validate_coordinates(submission.latitude, submission.longitude)
        captured_at = self._resolve_timestamp(submission.timestamp, arrival)
        image = self.decoder.decode(submission.image_bytes)
        day = local_calendar_day(captured_at)

        record_breadcrumb(
            message="attendance submission",
            category="attendance",
            data={"type": attendance_type, "user_id": user.pk, "offline": submission.is_offline},
        )

        try:
            with _stage("duplicate_check"):
                self._check_duplicates(user, attendance_type, day)
            with _stage("detection"):
                face = self._detect_face(image)
            with _stage("liveness"):
                report = self._check_liveness(image, face)
            with _stage("match"):
                match = self._match(user, image, face)
            with _stage("geofence"):
                location = validate_location(user, latitude, longitude, captured_at)
        except DecisionError as exc:
            self._record_denial(user, attendance_type, captured_at, exc, context)
            raise
        except DependencyError as exc:
            monitoring.record_decision(attendance_type, exc.code.lower())
            logger.warning(
                "Attendance %s for user %s failed closed: %s", attendance_type, user.pk, exc.code
            )
            raise

        with _stage("finalize"):
            record = self._persist(
                user=user,
                submission=submission,
                attendance_type=attendance_type,
                captured_at=captured_at,
                day=day,
                latitude=latitude,
                longitude=longitude,
                arrival=arrival,
                report=report,
                match=match,
                location=location,
                context=context,
            )
        return record

    # -- validation --------------------------------------------------------

    @staticmethod
    def _validate_type(attendance_type: str) -> str:
        if attendance_type not in AttendanceRecord.Type.values:
            raise InputError(
                "Attendance type must be check_in or check_out.", details={"field": "type"}
            )
        return str(attendance_type)

    @staticmethod
    def _resolve_timestamp(
        timestamp: Optional[datetime.datetime], arrival: datetime.datetime
    ) -> datetime.datetime:
        if timestamp is None:
            return arrival
        if not isinstance(timestamp, datetime.datetime):
            raise InputError("Timestamp must be a datetime.", details={"field": "timestamp"})
        if timezone.is_naive(timestamp):
            timestamp = timezone.make_aware(timestamp)
        if timestamp - arrival > MAX_FUTURE_SKEW:
            raise InputError("Timestamp is in the future.", details={"field": "timestamp"})
        return timestamp

    # -- checks ------------------------------------------------------------

    def _approved_exists(self, user, attendance_type: str, day: datetime.date) -> bool:
        return retry_read(
            lambda: AttendanceRecord.objects.filter(
                user=user,
                type=attendance_type,
                attendance_date=day,
                status=AttendanceRecord.Status.APPROVED,
            ).exists(),
            label="store.attendance",
        )

    def _check_duplicates(self, user, attendance_type: str, day: datetime.date) -> None:
        if attendance_type == CHECK_IN:
            if self._approved_exists(user, CHECK_IN, day):
                raise AlreadyCheckedIn(details={"date": day.isoformat()})
            return

        if not self._approved_exists(user, CHECK_IN, day):
            raise NoCheckInYet(details={"date": day.isoformat()})
        if self._approved_exists(user, CHECK_OUT, day):
            raise AlreadyCheckedOut(details={"date": day.isoformat()})

    def _detect_face(self, image) -> FaceDetection:
        detections = call_with_timeout(
            self.detector.detect,
            image,
            error_cls=DetectionUnavailableError,
            label="face_detector",
        )
        return select_face(list(detections or []), self.min_detection_confidence)

    def _check_liveness(self, image, face: FaceDetection) -> LivenessReport:
        report = self.aggregator.assess(image, face.bounding_box)
        if not report.passed:
            raise LivenessFailed(details={"liveness": report.as_dict()})
        return report

    def _match(self, user, image, face: FaceDetection) -> TemplateMatch:
        probe = extract_probe(self.extractor, image, face.bounding_box)
        templates = load_templates(user)
        if not templates:
            raise NoEnrolledTemplate()

        match = match_templates(self.vault, probe, templates)
        similarity = match.best.similarity if match.best is not None else None
        if similarity is None or similarity < self.attendance_threshold:
            raise FaceNotRecognized(
                details={
                    "similarity": round(similarity, 4) if similarity is not None else None,
                    "threshold": self.attendance_threshold,
                }
            )
        return match

    # -- finalize ----------------------------------------------------------

    def _persist(
        self,
        *,
        user,
        submission: AttendanceSubmission,
        attendance_type: str,
        captured_at: datetime.datetime,
        day: datetime.date,
        latitude: float,
        longitude: float,
        arrival: datetime.datetime,
        report: LivenessReport,
        match: TemplateMatch,
        location: LocationCheck,
        context: Optional[RequestContext],
    ) -> AttendanceRecord:
        status = AttendanceRecord.Status.APPROVED
        reason = None
        if location.checked and not location.within_radius:
            status = AttendanceRecord.Status.FLAGGED
            reason = location.reason

        similarity = match.best.similarity
        try:
            with transaction.atomic():
                record = AttendanceRecord.objects.create(
                    user=user,
                    type=attendance_type,
                    timestamp=captured_at,
                    attendance_date=day,
                    latitude=Decimal(str(round(latitude, 8))),
                    longitude=Decimal(str(round(longitude, 8))),
                    accuracy=(
                        Decimal(str(round(float(submission.accuracy), 2)))
                        if submission.accuracy is not None
                        else None
                    ),
                    location_address=submission.location_address or "",
                    confidence_score=Decimal(str(round(similarity, 4))),
                    matched_template_id=match.best.template_id,
                    liveness_passed=report.passed,
                    liveness_data=report.as_dict(),
                    status=status,
                    rejection_reason=reason,
                    is_offline=submission.is_offline,
                    synced_at=arrival if submission.is_offline else None,
                    device_info=dict(submission.device_metadata or {}) or None,
                )
        except IntegrityError as exc:
            if status == AttendanceRecord.Status.APPROVED and self._approved_exists(
                user, attendance_type, day
            ):
                duplicate = AlreadyCheckedIn if attendance_type == CHECK_IN else AlreadyCheckedOut
                error = duplicate(details={"date": day.isoformat()})
                self._record_denial(user, attendance_type, captured_at, error, context)
                raise error from exc
            raise

        outcome = record.status
        monitoring.record_decision(attendance_type, outcome)
        logger.info(
            "Attendance %s for user %s recorded as %s (similarity=%.3f)",
            attendance_type,
            user.pk,
            outcome,
            similarity,
        )

        self.audit.record(
            user,
            f"attendance_{attendance_type}",
            resource_type="attendance_record",
            resource_id=record.pk,
            new_values={
                "type": attendance_type,
                "status": record.status,
                "timestamp": captured_at,
                "confidence_score": record.confidence_score,
                "matched_template_id": record.matched_template_id,
                "liveness_passed": record.liveness_passed,
                "latitude": record.latitude,
                "longitude": record.longitude,
                "is_offline": record.is_offline,
                "geofence": location.as_dict(),
            },
            context=context,
            severity=(
                Severity.MEDIUM
                if record.status == AttendanceRecord.Status.FLAGGED
                else Severity.LOW
            ),
            description=reason or "",
        )
        safe_publish(
            self.notifier,
            ADMIN_TOPIC,
            {
                "type": "attendance_update",
                "attendanceType": attendance_type,
                "recordId": record.pk,
                "userId": user.pk,
                "timestamp": captured_at,
                "location": {"latitude": latitude, "longitude": longitude},
                "status": record.status,
                "isOffline": record.is_offline,
            },
        )
        return record

    def _record_denial(
        self,
        user,
        attendance_type: str,
        captured_at: datetime.datetime,
        error: DecisionError,
        context: Optional[RequestContext],
    ) -> None:
        monitoring.record_decision(attendance_type, error.code.lower())
        logger.info(
            "Attendance %s for user %s denied: %s", attendance_type, user.pk, error.code
        )
        self.audit.record(
            user,
            f"attendance_{attendance_type}_denied",
            resource_type="attendance_record",
            new_values={
                "type": attendance_type,
                "code": error.code,
                "timestamp": captured_at,
                "details": error.details,
            },
            context=context,
            severity=_DENIAL_SEVERITY.get(type(error), Severity.LOW),
            description=error.message,
        )


__all__ = [
    "AttendanceDecisionPipeline",
    "AttendanceSubmission",
    "TemplateMatch",
    "ensure_active",
    "extract_probe",
    "load_templates",
    "load_user",
    "match_templates",
    "select_face",
]
