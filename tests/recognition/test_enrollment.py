"""Tests for face template enrollment, verification and administration."""

import numpy as np
import pytest

from recognition import monitoring
from recognition.capabilities import FaceDetection
from recognition.errors import (
    DuplicateTemplate,
    EnrollmentLivenessFailed,
    LowFaceQuality,
    MultipleFacesDetected,
    NoEnrolledTemplate,
    NoFaceDetected,
    TemplateNotFound,
    UserNotActive,
)
from recognition.models import FaceTemplate
from users.models import AuditLogEntry, User

pytestmark = pytest.mark.django_db

BOX = {"x": 0, "y": 0, "w": 30, "h": 30}


def test_first_template_becomes_primary(service, fakes, vault, employee):
    template = service.enroll_template(employee.pk, b"jpeg")

    assert template.is_primary is True
    assert template.quality_score == 95
    assert template.key_reference == vault.key_reference
    assert template.template_hash == vault.fingerprint(fakes.extractor.vector)
    np.testing.assert_allclose(
        vault.decrypt_template(bytes(template.encrypted_encoding)), fakes.extractor.vector
    )
    entry = AuditLogEntry.objects.get(action="face_template_registered")
    assert entry.severity == AuditLogEntry.Severity.MEDIUM
    assert "encrypted_encoding" not in entry.new_values
    assert monitoring.metric_value("face_template_enrollments", {"outcome": "registered"}) == 1.0


def test_later_templates_are_secondary_unless_requested(service, fakes, employee):
    first = service.enroll_template(employee.pk, b"jpeg")
    fakes.extractor.vector = [0.0, 1.0]
    second = service.enroll_template(employee.pk, b"jpeg")

    first.refresh_from_db()
    assert first.is_primary is True
    assert second.is_primary is False

    fakes.extractor.vector = [-1.0, 0.2]
    third = service.enroll_template(employee.pk, b"jpeg", make_primary=True)

    assert list(FaceTemplate.objects.filter(user=employee, is_primary=True)) == [third]


def test_identical_template_is_rejected(service, employee):
    service.enroll_template(employee.pk, b"jpeg")

    with pytest.raises(DuplicateTemplate) as excinfo:
        service.enroll_template(employee.pk, b"jpeg")

    assert excinfo.value.details["similarity"] == 1.0
    assert FaceTemplate.objects.filter(user=employee).count() == 1


def test_near_duplicate_template_is_rejected(service, fakes, employee):
    service.enroll_template(employee.pk, b"jpeg")
    fakes.extractor.vector = [0.93, 0.37]

    with pytest.raises(DuplicateTemplate) as excinfo:
        service.enroll_template(employee.pk, b"jpeg")

    assert excinfo.value.details["similarity"] > 0.9
    assert monitoring.metric_value(
        "face_template_enrollments", {"outcome": "duplicate_template"}
    ) == 1.0


def test_same_face_may_be_enrolled_for_different_users(service, make_user):
    first = make_user()
    second = make_user()

    service.enroll_template(first.pk, b"jpeg")
    service.enroll_template(second.pk, b"jpeg")

    assert FaceTemplate.objects.count() == 2


def test_multiple_faces_are_rejected(service, fakes, employee):
    fakes.detector.detections = [
        FaceDetection(bounding_box=BOX, confidence=0.95),
        FaceDetection(bounding_box=BOX, confidence=0.9),
    ]

    with pytest.raises(MultipleFacesDetected):
        service.enroll_template(employee.pk, b"jpeg")


def test_low_quality_face_is_rejected(service, fakes, employee):
    fakes.detector.detections = [FaceDetection(bounding_box=BOX, confidence=0.75)]

    with pytest.raises(LowFaceQuality) as excinfo:
        service.enroll_template(employee.pk, b"jpeg")

    assert excinfo.value.details == {"quality_score": 75, "minimum": 80}


def test_no_face_is_rejected(service, fakes, employee):
    fakes.detector.detections = []

    with pytest.raises(NoFaceDetected):
        service.enroll_template(employee.pk, b"jpeg")


def test_spoofed_enrollment_is_rejected(service, fakes, employee):
    fakes.depth_analyzer.passed = False

    with pytest.raises(EnrollmentLivenessFailed):
        service.enroll_template(employee.pk, b"jpeg")

    assert not FaceTemplate.objects.exists()


def test_inactive_user_cannot_enroll(service, employee):
    employee.status = User.Status.INACTIVE
    employee.save()

    with pytest.raises(UserNotActive):
        service.enroll_template(employee.pk, b"jpeg")


def test_admin_enrollment_is_attributed_to_the_admin(service, employee, admin_user):
    service.enroll_template(employee.pk, b"jpeg", actor=admin_user)

    assert AuditLogEntry.objects.get(action="face_template_registered").actor == admin_user


# --- Verification ---


def test_verify_uses_generic_threshold(service, fakes, employee, enroll_vector):
    template = enroll_vector(employee, [1.0, 0.0])
    fakes.extractor.vector = [0.7, 0.71]

    result = service.verify_identity(employee.pk, b"jpeg")

    assert result.verified is True
    assert result.threshold == 0.6
    assert result.template_id == template.pk
    assert 0.6 < result.similarity < 0.8
    assert AuditLogEntry.objects.get(action="face_verification").new_values["verified"] is True


def test_verify_rejects_a_different_face(service, fakes, employee, enroll_vector):
    enroll_vector(employee, [1.0, 0.0])
    fakes.extractor.vector = [0.0, 1.0]

    result = service.verify_identity(employee.pk, b"jpeg")

    assert result.verified is False
    assert result.as_dict()["similarity"] == 0.0


def test_verify_without_templates(service, employee):
    with pytest.raises(NoEnrolledTemplate):
        service.verify_identity(employee.pk, b"jpeg")


def test_verify_refuses_suspended_users(service, fakes, employee, enroll_vector):
    enroll_vector(employee, [1.0, 0.0])
    employee.status = User.Status.SUSPENDED
    employee.save()

    with pytest.raises(UserNotActive):
        service.verify_identity(employee.pk, b"jpeg")

    assert fakes.decoder.calls == 0
    assert not AuditLogEntry.objects.filter(action="face_verification").exists()


def test_verify_does_not_run_liveness(service, fakes, employee, enroll_vector):
    enroll_vector(employee, [1.0, 0.0])

    service.verify_identity(employee.pk, b"jpeg")

    assert fakes.liveness_model.calls == 0


# --- Administration ---


def test_list_templates_in_enrollment_order(service, employee, enroll_vector):
    first = enroll_vector(employee, [1.0, 0.0])
    second = enroll_vector(employee, [0.0, 1.0], primary=False)

    assert service.list_templates(employee.pk) == [first, second]


def test_set_primary_moves_the_flag(service, employee, admin_user, enroll_vector):
    first = enroll_vector(employee, [1.0, 0.0])
    second = enroll_vector(employee, [0.0, 1.0], primary=False)

    service.set_primary_template(second.pk, actor=admin_user)

    first.refresh_from_db()
    second.refresh_from_db()
    assert first.is_primary is False
    assert second.is_primary is True
    entry = AuditLogEntry.objects.get(action="face_template_set_primary")
    assert entry.old_values == {"previous_primary_ids": [first.pk]}


def test_deleting_the_primary_does_not_promote_another(service, employee, enroll_vector):
    primary = enroll_vector(employee, [1.0, 0.0])
    other = enroll_vector(employee, [0.0, 1.0], primary=False)

    service.delete_template(primary.pk, actor=employee)

    other.refresh_from_db()
    assert other.is_primary is False
    assert not FaceTemplate.objects.filter(pk=primary.pk).exists()
    entry = AuditLogEntry.objects.get(action="face_template_deleted")
    assert entry.old_values["is_primary"] is True


def test_missing_template(service):
    with pytest.raises(TemplateNotFound):
        service.delete_template(987654)
