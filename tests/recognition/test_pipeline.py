"""End-to-end tests for the attendance decision pipeline."""

import datetime
import threading
from decimal import Decimal
from unittest import mock

import pytest
from cryptography.fernet import Fernet
from django.db import DatabaseError, connection
from django.test import override_settings

from fakes import NOW, FakeSubModel
from recognition import monitoring
from recognition.capabilities import FaceDetection
from recognition.errors import (
    AlreadyCheckedIn,
    AlreadyCheckedOut,
    DecryptionError,
    DetectionUnavailableError,
    FaceNotRecognized,
    FeatureExtractionError,
    InputError,
    LivenessFailed,
    LivenessUnavailableError,
    NoCheckInYet,
    NoEnrolledTemplate,
    NoFaceDetected,
    UserNotActive,
)
from recognition.matcher import cosine_similarity
from recognition.models import FaceTemplate
from recognition.pipeline import AttendanceDecisionPipeline
from recognition.vault import TemplateVault
from users.models import AttendanceRecord, AuditLogEntry, User, WorkSchedule

pytestmark = pytest.mark.django_db

TEMPLATE = [1.0, 0.0]
COORDINATES = {"latitude": 40.7128, "longitude": -74.0060, "accuracy": 12.5, "address": "1 Main"}


@pytest.fixture
def enrolled(employee, enroll_vector):
    enroll_vector(employee, TEMPLATE)
    return employee


def _submit(service, user, attendance_type=AttendanceRecord.Type.CHECK_IN, **overrides):
    values = {
        "image_bytes": b"jpeg-bytes",
        "coordinates": COORDINATES,
        "timestamp": None,
        "device_metadata": {"platform": "android"},
        "is_offline": False,
        "attendance_type": attendance_type,
    }
    values.update(overrides)
    return service.submit_attendance(user.pk, **values)


def _approved(user, attendance_type, day=None):
    return AttendanceRecord.objects.create(
        user=user,
        type=attendance_type,
        timestamp=NOW - datetime.timedelta(hours=1),
        attendance_date=day or NOW.date(),
        status=AttendanceRecord.Status.APPROVED,
    )


# --- Accepted submissions ---


def test_genuine_check_in_is_approved(service, fakes, enrolled):
    record = _submit(service, enrolled)

    record.refresh_from_db()
    template = FaceTemplate.objects.get(user=enrolled)
    assert record.status == AttendanceRecord.Status.APPROVED
    assert record.confidence_score == Decimal("0.9200")
    assert record.matched_template_id == template.pk
    assert record.liveness_passed is True
    assert record.liveness_data["overall_score"] == pytest.approx(0.879, abs=1e-4)
    assert record.timestamp == NOW
    assert record.attendance_date == NOW.date()
    assert record.accuracy == Decimal("12.50")
    assert record.location_address == "1 Main"
    assert record.device_info == {"platform": "android"}
    assert record.is_offline is False
    assert record.synced_at is None

    entry = AuditLogEntry.objects.get(action="attendance_check_in")
    assert entry.severity == AuditLogEntry.Severity.LOW
    assert entry.resource_id == str(record.pk)
    assert entry.actor == enrolled

    (event,) = fakes.notifier.of_type("attendance_update")
    assert event["recordId"] == record.pk
    assert event["status"] == "approved"
    assert event["attendanceType"] == "check_in"
    assert monitoring.metric_value(
        "attendance_decisions", {"type": "check_in", "outcome": "approved"}
    ) == 1.0


def test_check_out_after_check_in(service, enrolled):
    _approved(enrolled, AttendanceRecord.Type.CHECK_IN)

    record = _submit(service, enrolled, AttendanceRecord.Type.CHECK_OUT)

    assert record.type == AttendanceRecord.Type.CHECK_OUT
    assert record.status == AttendanceRecord.Status.APPROVED


def test_similarity_equal_to_threshold_is_accepted(service, fakes, enrolled):
    similarity = cosine_similarity(fakes.extractor.vector, TEMPLATE)
    service.pipeline.attendance_threshold = similarity

    record = _submit(service, enrolled)

    assert record.status == AttendanceRecord.Status.APPROVED


def test_best_template_is_chosen(service, fakes, employee, enroll_vector):
    enroll_vector(employee, [0.0, 1.0], primary=True)
    best = enroll_vector(employee, [0.95, 0.05], primary=False)

    record = _submit(service, employee)

    assert record.matched_template_id == best.pk


def test_highest_confidence_face_is_used(service, fakes, enrolled):
    small = {"x": 0, "y": 0, "w": 10, "h": 10}
    large = {"x": 5, "y": 5, "w": 50, "h": 50}
    fakes.detector.detections = [
        FaceDetection(bounding_box=small, confidence=0.8),
        FaceDetection(bounding_box=large, confidence=0.99),
    ]

    _submit(service, enrolled)

    assert fakes.extractor.regions == [large]


# --- Geofence ---


def test_check_in_outside_site_is_flagged(service, fakes, enrolled):
    WorkSchedule.objects.create(
        user=enrolled,
        schedule_name="Day shift",
        start_time=datetime.time(9),
        end_time=datetime.time(17),
        latitude=Decimal("40.71280000"),
        longitude=Decimal("-74.00600000"),
        location_radius=100,
        location_name="HQ",
    )

    record = _submit(
        service, enrolled, coordinates={"latitude": 40.7173, "longitude": -74.0060}
    )

    assert record.status == AttendanceRecord.Status.FLAGGED
    assert record.display_status == "pending review"
    assert record.rejection_reason == "Location is 500m away from HQ. Allowed radius: 100m"
    entry = AuditLogEntry.objects.get(action="attendance_check_in")
    assert entry.severity == AuditLogEntry.Severity.MEDIUM
    assert entry.new_values["geofence"]["within_radius"] is False
    assert fakes.notifier.of_type("attendance_update")[0]["status"] == "flagged"


def test_flagged_record_does_not_block_a_later_approved_one(service, enrolled):
    AttendanceRecord.objects.create(
        user=enrolled,
        type=AttendanceRecord.Type.CHECK_IN,
        timestamp=NOW - datetime.timedelta(minutes=5),
        status=AttendanceRecord.Status.FLAGGED,
    )

    record = _submit(service, enrolled)

    assert record.status == AttendanceRecord.Status.APPROVED


# --- Denials ---


def test_spoof_attempt_is_denied(service, fakes, enrolled):
    fakes.liveness_model.score = 0.3
    fakes.liveness_model.passed = False

    with pytest.raises(LivenessFailed) as excinfo:
        _submit(service, enrolled)

    assert excinfo.value.details["liveness"]["is_live"] is False
    assert not AttendanceRecord.objects.exists()
    entry = AuditLogEntry.objects.get(action="attendance_check_in_denied")
    assert entry.severity == AuditLogEntry.Severity.HIGH
    assert entry.new_values["code"] == "LIVENESS_FAILED"
    assert monitoring.metric_value(
        "attendance_decisions", {"type": "check_in", "outcome": "liveness_failed"}
    ) == 1.0
    assert fakes.notifier.events == []


def test_duplicate_check_in_is_denied(service, enrolled):
    _approved(enrolled, AttendanceRecord.Type.CHECK_IN)

    with pytest.raises(AlreadyCheckedIn):
        _submit(service, enrolled)

    assert AttendanceRecord.objects.filter(status="approved").count() == 1


def test_duplicate_check_out_is_denied(service, enrolled):
    _approved(enrolled, AttendanceRecord.Type.CHECK_IN)
    _approved(enrolled, AttendanceRecord.Type.CHECK_OUT)

    with pytest.raises(AlreadyCheckedOut):
        _submit(service, enrolled, AttendanceRecord.Type.CHECK_OUT)


def test_check_out_requires_check_in(service, fakes, enrolled):
    with pytest.raises(NoCheckInYet):
        _submit(service, enrolled, AttendanceRecord.Type.CHECK_OUT)

    assert fakes.detector.calls == 0


def test_unknown_face_is_denied(service, fakes, enrolled):
    fakes.extractor.vector = [0.0, 1.0]

    with pytest.raises(FaceNotRecognized) as excinfo:
        _submit(service, enrolled)

    assert excinfo.value.details["similarity"] == pytest.approx(0.0)
    entry = AuditLogEntry.objects.get(action="attendance_check_in_denied")
    assert entry.severity == AuditLogEntry.Severity.MEDIUM



def test_face_good_enough_to_verify_is_not_enough_to_check_in(service, fakes, enrolled):
    fakes.extractor.vector = [0.65, (1 - 0.65**2) ** 0.5]

    with pytest.raises(FaceNotRecognized) as excinfo:
        _submit(service, enrolled)

    assert excinfo.value.details["similarity"] == pytest.approx(0.65)
    assert not AttendanceRecord.objects.exists()
    assert service.verify_identity(enrolled.pk, b"jpeg").verified is True

def test_no_enrolled_template(service, employee):
    with pytest.raises(NoEnrolledTemplate):
        _submit(service, employee)


@pytest.mark.parametrize(
    "detections",
    [[], [FaceDetection(bounding_box={"x": 0, "y": 0, "w": 5, "h": 5}, confidence=0.5)]],
)
def test_no_usable_face(service, fakes, enrolled, detections):
    fakes.detector.detections = detections

    with pytest.raises(NoFaceDetected):
        _submit(service, enrolled)

    assert fakes.liveness_model.calls == 0


def test_inactive_user_is_denied(service, fakes, enrolled):
    enrolled.status = User.Status.SUSPENDED
    enrolled.save()

    with pytest.raises(UserNotActive):
        _submit(service, enrolled)

    assert fakes.decoder.calls == 0


# --- Input validation ---


@pytest.mark.parametrize(
    "coordinates",
    [{}, {"latitude": 95.0, "longitude": 0.0}, {"latitude": 0.0, "longitude": -181.0}],
)
def test_invalid_coordinates_are_rejected_before_any_model_call(
    service, fakes, enrolled, coordinates
):
    with pytest.raises(InputError):
        _submit(service, enrolled, coordinates=coordinates)

    assert fakes.decoder.calls == 0
    assert fakes.detector.calls == 0
    assert not AuditLogEntry.objects.exists()


def test_undecodable_image_is_rejected(service, fakes, enrolled):
    with pytest.raises(InputError):
        _submit(service, enrolled, image_bytes=b"corrupt")

    assert fakes.detector.calls == 0


def test_unknown_attendance_type_is_rejected(service, enrolled):
    with pytest.raises(InputError):
        _submit(service, enrolled, attendance_type="lunch_break")


def test_timestamp_far_in_the_future_is_rejected(service, enrolled):
    with pytest.raises(InputError):
        _submit(service, enrolled, timestamp=NOW + datetime.timedelta(minutes=10))


def test_small_clock_skew_is_tolerated(service, enrolled):
    captured = NOW + datetime.timedelta(minutes=2)
    record = _submit(service, enrolled, timestamp=captured)
    assert record.timestamp == captured


# --- Dependency failures fail closed ---


def test_extractor_failure_fails_closed(service, fakes, enrolled):
    fakes.extractor.error = RuntimeError("gpu lost")

    with pytest.raises(FeatureExtractionError):
        _submit(service, enrolled)

    assert not AttendanceRecord.objects.exists()
    assert monitoring.metric_value(
        "attendance_dependency_failures", {"dependency": "feature_extractor"}
    ) == 1.0


def test_degenerate_probe_fails_closed(service, fakes, enrolled):
    fakes.extractor.vector = [0.0, 0.0]

    with pytest.raises(FeatureExtractionError):
        _submit(service, enrolled)

    assert not AttendanceRecord.objects.exists()


def test_liveness_model_failure_never_defaults_to_pass(service, fakes, enrolled):
    fakes.liveness_model.error = RuntimeError("model file missing")

    with pytest.raises(LivenessUnavailableError):
        _submit(service, enrolled)

    assert not AttendanceRecord.objects.exists()


@override_settings(RECOGNITION_MODEL_TIMEOUT_SECONDS=0.05)
def test_detector_timeout_fails_closed(service, fakes, enrolled):
    fakes.detector.delay = 0.5

    with pytest.raises(DetectionUnavailableError):
        _submit(service, enrolled)

    assert not AttendanceRecord.objects.exists()


def test_template_sealed_with_another_key_fails_closed(service, employee):
    foreign = TemplateVault(key=Fernet.generate_key())
    FaceTemplate.objects.create(
        user=employee,
        encrypted_encoding=foreign.encrypt_template(TEMPLATE),
        key_reference="foreign",
        template_hash=foreign.fingerprint(TEMPLATE),
        quality_score=90,
        is_primary=True,
    )

    with pytest.raises(DecryptionError):
        _submit(service, employee)

    assert not AttendanceRecord.objects.exists()


# --- Concurrency and side effects ---


def test_store_constraint_backs_up_the_duplicate_check(service, enrolled):
    with mock.patch.object(AttendanceDecisionPipeline, "_check_duplicates"):
        first = _submit(service, enrolled)
        with pytest.raises(AlreadyCheckedIn):
            _submit(service, enrolled)

    assert list(AttendanceRecord.objects.filter(status="approved")) == [first]
    assert AuditLogEntry.objects.filter(action="attendance_check_in_denied").count() == 1


@pytest.mark.django_db(transaction=True)
def test_simultaneous_check_ins_approve_exactly_one(service, enrolled):
    barrier = threading.Barrier(2, timeout=10)
    check_duplicates = AttendanceDecisionPipeline._check_duplicates
    outcomes = []

    def _check_then_wait(pipeline, *args):
        check_duplicates(pipeline, *args)
        barrier.wait()

    def _worker():
        try:
            outcomes.append(_submit(service, enrolled))
        except Exception as exc:
            outcomes.append(exc)
        finally:
            connection.close()

    with mock.patch.object(
        AttendanceDecisionPipeline, "_check_duplicates", _check_then_wait
    ):
        threads = [threading.Thread(target=_worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

    assert len(outcomes) == 2
    approved = [outcome for outcome in outcomes if isinstance(outcome, AttendanceRecord)]
    denied = [outcome for outcome in outcomes if isinstance(outcome, AlreadyCheckedIn)]
    assert len(approved) == 1 and len(denied) == 1
    assert list(AttendanceRecord.objects.filter(status="approved")) == approved


def test_audit_failure_does_not_roll_back_the_record(service, enrolled):
    with mock.patch.object(
        AuditLogEntry.objects, "create", side_effect=DatabaseError("audit store down")
    ):
        record = _submit(service, enrolled)

    assert AttendanceRecord.objects.filter(pk=record.pk).exists()
    assert monitoring.metric_value(
        "attendance_audit_write_failures", {"action": "attendance_check_in"}
    ) == 1.0


def test_notifier_failure_does_not_fail_the_submission(service, fakes, enrolled):
    fakes.notifier.fail = True

    record = _submit(service, enrolled)

    assert record.status == AttendanceRecord.Status.APPROVED
    assert monitoring.metric_value("attendance_notify_failures", {"topic": "admin"}) == 1.0


# --- Offline submissions ---


def test_offline_submission_uses_embedded_timestamp(service, enrolled):
    _approved(enrolled, AttendanceRecord.Type.CHECK_IN)
    captured = datetime.datetime(2024, 3, 3, 23, 30, tzinfo=datetime.timezone.utc)

    record = _submit(service, enrolled, timestamp=captured, is_offline=True)

    assert record.timestamp == captured
    assert record.attendance_date == datetime.date(2024, 3, 3)
    assert record.is_offline is True
    assert record.synced_at == NOW
    assert record.status == AttendanceRecord.Status.APPROVED


def test_offline_submission_runs_every_check(service, fakes, enrolled):
    fakes.texture_analyzer.passed = False

    with pytest.raises(LivenessFailed):
        _submit(
            service,
            enrolled,
            timestamp=NOW - datetime.timedelta(hours=2),
            is_offline=True,
        )


def test_weak_liveness_sub_check_alone_denies(service, fakes, enrolled):
    fakes.depth_analyzer.score = 0.99
    fakes.depth_analyzer.passed = False
    fakes.liveness_model.score = 1.0
    fakes.texture_analyzer.score = 1.0

    with pytest.raises(LivenessFailed):
        _submit(service, enrolled)


def test_liveness_sub_models_receive_the_face_region(service, fakes, enrolled):
    seen = []

    class RegionSpy(FakeSubModel):
        def analyze(self, image, region=None):
            seen.append(region)
            return super().analyze(image, region)

    service.pipeline.aggregator.depth_analyzer = RegionSpy(0.9)

    _submit(service, enrolled)

    assert seen == [fakes.detector.detections[0].bounding_box]
