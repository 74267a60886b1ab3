"""Error taxonomy for attendance decisions, enrollment and their dependencies.

Every error carries a stable machine-readable ``code`` plus a human-readable
message so the API layer can surface it without inspecting the class. ``details``
must never contain feature vectors or ciphertext.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class AttendanceError(Exception):
    """Base class for every expected failure raised by the recognition services."""

    code = "ATTENDANCE_ERROR"
    default_message = "The request could not be processed."
    http_status = 400

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details: dict[str, Any] = dict(details or {})
        super().__init__(self.message)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# --- Input errors -----------------------------------------------------------


class InputError(AttendanceError):
    """Malformed submission rejected before any model call."""

    code = "INVALID_INPUT"
    default_message = "The submission is invalid."


# --- Decision errors --------------------------------------------------------


class DecisionError(AttendanceError):
    """An expected business outcome that denies the submission."""

    code = "DECISION_REJECTED"


class UserNotActive(DecisionError):
    code = "USER_NOT_ACTIVE"
    default_message = "Only active users may submit attendance."
    http_status = 403


class NoFaceDetected(DecisionError):
    code = "NO_FACE_DETECTED"
    default_message = "No face detected in the image."


class LivenessFailed(DecisionError):
    code = "LIVENESS_FAILED"
    default_message = "Liveness detection failed. Please ensure you are a live person."


class NoEnrolledTemplate(DecisionError):
    code = "NO_ENROLLED_TEMPLATE"
    default_message = "No face template found. Please register your face first."


class FaceNotRecognized(DecisionError):
    code = "FACE_NOT_RECOGNIZED"
    default_message = "Face recognition failed. Please try again."


class AlreadyCheckedIn(DecisionError):
    code = "ALREADY_CHECKED_IN"
    default_message = "You have already checked in today."
    http_status = 409


class AlreadyCheckedOut(DecisionError):
    code = "ALREADY_CHECKED_OUT"
    default_message = "You have already checked out today."
    http_status = 409


class NoCheckInYet(DecisionError):
    code = "NO_CHECK_IN_YET"
    default_message = "You must check in before checking out."
    http_status = 409


class EnrollmentError(DecisionError):
    """Base class for template enrollment refusals."""

    code = "ENROLLMENT_REJECTED"
    default_message = "Face template registration failed."


class MultipleFacesDetected(EnrollmentError):
    code = "MULTIPLE_FACES_DETECTED"
    default_message = "Multiple faces detected. Please provide an image with only one face."


class LowFaceQuality(EnrollmentError):
    code = "LOW_FACE_QUALITY"
    default_message = "Face quality is too low. Please provide a clearer image."


class DuplicateTemplate(EnrollmentError):
    code = "DUPLICATE_TEMPLATE"
    default_message = "Similar face template already exists for this user."
    http_status = 409


class EnrollmentLivenessFailed(EnrollmentError):
    code = "LIVENESS_FAILED"
    default_message = "Liveness detection failed. Please ensure you are a live person."


class NotPermitted(AttendanceError):
    code = "PERMISSION_DENIED"
    default_message = "You do not have permission to perform this action."
    http_status = 403


# --- Not found --------------------------------------------------------------


class NotFound(AttendanceError):
    code = "NOT_FOUND"
    default_message = "Resource not found."
    http_status = 404


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"
    default_message = "User not found."


class RecordNotFound(NotFound):
    code = "RECORD_NOT_FOUND"
    default_message = "Attendance record not found."


class TemplateNotFound(NotFound):
    code = "TEMPLATE_NOT_FOUND"
    default_message = "Face template not found."


# --- Dependency errors ------------------------------------------------------


class DependencyError(AttendanceError):
    """A collaborator (model, store, key material) is unavailable; the step fails closed."""

    code = "DEPENDENCY_UNAVAILABLE"
    default_message = "A required service is temporarily unavailable."
    http_status = 503


class DetectionUnavailableError(DependencyError):
    code = "FACE_DETECTION_UNAVAILABLE"
    default_message = "Face detection is temporarily unavailable."


class FeatureExtractionError(DependencyError):
    code = "FEATURE_EXTRACTION_UNAVAILABLE"
    default_message = "Face feature extraction is temporarily unavailable."


class LivenessUnavailableError(DependencyError):
    code = "LIVENESS_UNAVAILABLE"
    default_message = "Liveness detection is temporarily unavailable."


class EncryptionError(DependencyError):
    code = "ENCRYPTION_UNAVAILABLE"
    default_message = "Template encryption is not available."


class DecryptionError(DependencyError):
    code = "TEMPLATE_DECRYPTION_FAILED"
    default_message = "A stored face template could not be decrypted."


class StoreUnavailableError(DependencyError):
    code = "STORE_UNAVAILABLE"
    default_message = "The attendance store is temporarily unavailable."


# --- Matcher value errors ---------------------------------------------------


class DegenerateVectorError(ValueError):
    """Cosine similarity is undefined for zero-norm or non-finite vectors."""


class DimensionMismatchError(ValueError):
    """The compared feature vectors have different lengths."""


__all__ = [
    "AlreadyCheckedIn",
    "AlreadyCheckedOut",
    "AttendanceError",
    "DecisionError",
    "DecryptionError",
    "DegenerateVectorError",
    "DependencyError",
    "DetectionUnavailableError",
    "DimensionMismatchError",
    "DuplicateTemplate",
    "EncryptionError",
    "EnrollmentError",
    "EnrollmentLivenessFailed",
    "FaceNotRecognized",
    "FeatureExtractionError",
    "InputError",
    "LivenessFailed",
    "LivenessUnavailableError",
    "LowFaceQuality",
    "MultipleFacesDetected",
    "NoCheckInYet",
    "NoEnrolledTemplate",
    "NoFaceDetected",
    "NotFound",
    "NotPermitted",
    "RecordNotFound",
    "StoreUnavailableError",
    "TemplateNotFound",
    "UserNotActive",
    "UserNotFound",
]
