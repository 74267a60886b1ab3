"""Face template enrollment, ad-hoc verification and template administration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from django.conf import settings
from django.db import transaction

from users.models import User

from . import monitoring
from .audit import AuditRecorder, RequestContext, Severity
from .capabilities import FaceDetection, FaceDetector, FeatureExtractor, ImageDecoder
from .errors import (
    DetectionUnavailableError,
    DuplicateTemplate,
    EnrollmentError,
    EnrollmentLivenessFailed,
    LowFaceQuality,
    MultipleFacesDetected,
    NoEnrolledTemplate,
    NoFaceDetected,
    TemplateNotFound,
)
from .liveness import LivenessAggregator
from .matcher import cosine_similarity
from .models import FaceTemplate
from .pipeline import (
    ensure_active,
    extract_probe,
    load_templates,
    load_user,
    match_templates,
    select_face,
)
from .timeouts import call_with_timeout, retry_read
from .vault import TemplateVault

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    verified: bool
    similarity: Optional[float]
    threshold: float
    template_id: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "similarity": round(self.similarity, 4) if self.similarity is not None else None,
            "threshold": self.threshold,
            "template_id": self.template_id,
        }


class FaceEnrollmentService:
    """Register, verify and administer a user's face templates."""

    def __init__(
        self,
        *,
        decoder: ImageDecoder,
        detector: FaceDetector,
        extractor: FeatureExtractor,
        aggregator: LivenessAggregator,
        vault: TemplateVault,
        audit: AuditRecorder,
        match_threshold: Optional[float] = None,
        duplicate_threshold: Optional[float] = None,
        min_quality: Optional[float] = None,
        min_detection_confidence: Optional[float] = None,
    ) -> None:
        self.decoder = decoder
        self.detector = detector
        self.extractor = extractor
        self.aggregator = aggregator
        self.vault = vault
        self.audit = audit
        self.match_threshold = float(
            match_threshold
            if match_threshold is not None
            else getattr(settings, "RECOGNITION_MATCH_THRESHOLD", 0.6)
        )
        self.duplicate_threshold = float(
            duplicate_threshold
            if duplicate_threshold is not None
            else getattr(settings, "RECOGNITION_DUPLICATE_TEMPLATE_THRESHOLD", 0.9)
        )
        self.min_quality = float(
            min_quality
            if min_quality is not None
            else getattr(settings, "RECOGNITION_ENROLLMENT_MIN_QUALITY", 0.8)
        )
        self.min_detection_confidence = float(
            min_detection_confidence
            if min_detection_confidence is not None
            else getattr(settings, "RECOGNITION_MIN_DETECTION_CONFIDENCE", 0.7)
        )

    def _detections(self, image) -> list[FaceDetection]:
        detections = call_with_timeout(
            self.detector.detect,
            image,
            error_cls=DetectionUnavailableError,
            label="face_detector",
        )
        return [
            detection
            for detection in detections or []
            if float(detection.confidence) >= self.min_detection_confidence
        ]

    # -- enrollment --------------------------------------------------------

    def enroll(
        self,
        user_id,
        image_bytes: bytes,
        *,
        make_primary: bool = False,
        actor=None,
        context: Optional[RequestContext] = None,
    ) -> FaceTemplate:
        """Register a new template for ``user_id``.

        The face must be alone in the frame, clear the quality bar, pass the full
        liveness check and not duplicate an existing template of the same user.
        The first template of a user always becomes primary.
        """

        user = load_user(user_id)
        ensure_active(user)
        image = self.decoder.decode(image_bytes)

        try:
            detections = self._detections(image)
            if not detections:
                raise NoFaceDetected()
            if len(detections) > 1:
                raise MultipleFacesDetected(details={"faces": len(detections)})
            face = detections[0]

            confidence = float(face.confidence)
            quality_score = int(round(confidence * 100))
            if confidence < self.min_quality:
                raise LowFaceQuality(
                    details={
                        "quality_score": quality_score,
                        "minimum": int(round(self.min_quality * 100)),
                    }
                )

            report = self.aggregator.assess(image, face.bounding_box)
            if not report.passed:
                raise EnrollmentLivenessFailed(details={"liveness": report.as_dict()})

            probe = extract_probe(self.extractor, image, face.bounding_box)
            fingerprint = self.vault.fingerprint(probe)
            existing = load_templates(user)
            self._reject_duplicates(probe, fingerprint, existing)
        except (EnrollmentError, NoFaceDetected) as exc:
            monitoring.record_enrollment(exc.code.lower())
            logger.info("Enrollment for user %s rejected: %s", user.pk, exc.code)
            raise

        token = self.vault.encrypt_template(probe)
        with transaction.atomic():
            User.objects.select_for_update().filter(pk=user.pk).first()
            has_templates = FaceTemplate.objects.filter(user=user).exists()
            is_primary = make_primary or not has_templates
            if is_primary:
                FaceTemplate.objects.filter(user=user, is_primary=True).update(is_primary=False)
            template = FaceTemplate.objects.create(
                user=user,
                encrypted_encoding=token,
                key_reference=self.vault.key_reference,
                template_hash=fingerprint,
                quality_score=quality_score,
                is_primary=is_primary,
                metadata={
                    "detection_confidence": round(confidence, 4),
                    "bounding_box": dict(face.bounding_box),
                    "liveness_score": report.overall_score,
                },
            )

        monitoring.record_enrollment("registered")
        logger.info("Registered face template %s for user %s", template.pk, user.pk)
        self.audit.record(
            actor or user,
            "face_template_registered",
            resource_type="face_template",
            resource_id=template.pk,
            new_values={
                "user_id": user.pk,
                "quality_score": quality_score,
                "is_primary": is_primary,
                "template_hash": fingerprint,
            },
            context=context,
            severity=Severity.MEDIUM,
        )
        return template

    def _reject_duplicates(self, probe, fingerprint: str, existing: list[FaceTemplate]) -> None:
        for template in existing:
            if template.template_hash == fingerprint:
                raise DuplicateTemplate(details={"similarity": 1.0})
        for template in existing:
            stored = self.vault.decrypt_template(bytes(template.encrypted_encoding))
            try:
                similarity = cosine_similarity(probe, stored)
            except ValueError:
                logger.warning("Skipping degenerate face template %s", template.pk)
                continue
            if similarity > self.duplicate_threshold:
                raise DuplicateTemplate(
                    details={
                        "similarity": round(similarity, 4),
                        "threshold": self.duplicate_threshold,
                    }
                )

    # -- verification ------------------------------------------------------

    def verify(
        self, user_id, image_bytes: bytes, *, actor=None, context: Optional[RequestContext] = None
    ) -> VerificationResult:
        """Compare a face against every template of ``user_id`` at the generic threshold."""

        user = load_user(user_id)
        ensure_active(user)
        image = self.decoder.decode(image_bytes)
        face = select_face(self._detections(image), self.min_detection_confidence)
        probe = extract_probe(self.extractor, image, face.bounding_box)
        templates = load_templates(user)
        if not templates:
            raise NoEnrolledTemplate()

        match = match_templates(self.vault, probe, templates)
        similarity = match.best.similarity if match.best is not None else None
        result = VerificationResult(
            verified=similarity is not None and similarity > self.match_threshold,
            similarity=similarity,
            threshold=self.match_threshold,
            template_id=match.best.template_id if match.best is not None else None,
        )
        self.audit.record(
            actor or user,
            "face_verification",
            resource_type="user",
            resource_id=user.pk,
            new_values=result.as_dict(),
            context=context,
            severity=Severity.LOW,
        )
        return result

    # -- administration ----------------------------------------------------

    def list_templates(self, user_id) -> list[FaceTemplate]:
        user = load_user(user_id)
        return load_templates(user)

    def get_template(self, template_id) -> FaceTemplate:
        try:
            return retry_read(
                lambda: FaceTemplate.objects.select_related("user").get(pk=template_id),
                label="store.templates",
            )
        except (FaceTemplate.DoesNotExist, ValueError, TypeError) as exc:
            raise TemplateNotFound() from exc

    def delete_template(
        self, template_id, *, actor=None, context: Optional[RequestContext] = None
    ) -> None:
        """Delete a template. Removing the primary leaves the user without one."""

        template = self.get_template(template_id)
        snapshot = {
            "user_id": template.user_id,
            "quality_score": template.quality_score,
            "is_primary": template.is_primary,
            "template_hash": template.template_hash,
        }
        pk = template.pk
        template.delete()
        logger.info("Deleted face template %s for user %s", pk, snapshot["user_id"])
        self.audit.record(
            actor,
            "face_template_deleted",
            resource_type="face_template",
            resource_id=pk,
            old_values=snapshot,
            context=context,
            severity=Severity.MEDIUM,
        )

    def set_primary(
        self, template_id, *, actor=None, context: Optional[RequestContext] = None
    ) -> FaceTemplate:
        template = self.get_template(template_id)
        previous = list(
            FaceTemplate.objects.filter(user_id=template.user_id, is_primary=True)
            .exclude(pk=template.pk)
            .values_list("pk", flat=True)
        )
        with transaction.atomic():
            FaceTemplate.objects.filter(user_id=template.user_id, is_primary=True).exclude(
                pk=template.pk
            ).update(is_primary=False)
            template.is_primary = True
            template.save(update_fields=["is_primary", "updated_at"])

        self.audit.record(
            actor,
            "face_template_set_primary",
            resource_type="face_template",
            resource_id=template.pk,
            old_values={"previous_primary_ids": previous},
            new_values={"user_id": template.user_id, "is_primary": True},
            context=context,
            severity=Severity.LOW,
        )
        return template


__all__ = ["FaceEnrollmentService", "VerificationResult"]
