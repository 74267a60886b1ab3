"""Default capability adapters backed by OpenCV and DeepFace.

DeepFace (and TensorFlow behind it) is imported lazily on first use so that
management commands and test suites binding fakes never pay for it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence, Tuple

from django.conf import settings

import cv2
import numpy as np

from .capabilities import ArrayLike, FaceDetection, FaceRegion, SubCheckResult, crop_to_region
from .errors import (
    DetectionUnavailableError,
    FeatureExtractionError,
    InputError,
    LivenessUnavailableError,
)

logger = logging.getLogger(__name__)

TEXTURE_SHARPNESS_MIN = 50.0
TEXTURE_SHARPNESS_REFERENCE = 150.0
DEPTH_VARIANCE_MIN = 0.1
DEPTH_FLATNESS_MAX = 0.8


def _load_deepface():
    from deepface import DeepFace

    return DeepFace


def _deepface_model() -> str:
    return str(getattr(settings, "RECOGNITION_DEEPFACE_MODEL", "Facenet"))


def _deepface_detector() -> str:
    return str(getattr(settings, "RECOGNITION_DEEPFACE_DETECTOR", "opencv"))


def _to_grayscale(image: ArrayLike) -> ArrayLike:
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def _facial_area(payload: Any) -> Optional[Dict[str, int]]:
    if not isinstance(payload, dict):
        return None
    area = payload.get("facial_area")
    if not isinstance(area, dict):
        return None
    return {key: int(area.get(key, 0) or 0) for key in ("x", "y", "w", "h")}


def extract_embedding(representations) -> Tuple[Optional[np.ndarray], Optional[Dict[str, int]]]:
    """Normalise a ``DeepFace.represent`` payload into a single embedding vector."""

    embedding_vector: Optional[Sequence[float]] = None
    facial_area: Optional[Dict[str, int]] = None

    if isinstance(representations, list) and representations:
        first = representations[0]
        if isinstance(first, dict):
            embedding_vector = first.get("embedding")
            facial_area = _facial_area(first)
        elif isinstance(first, (list, tuple, np.ndarray)):
            embedding_vector = first
    elif isinstance(representations, dict):
        embedding_vector = representations.get("embedding")
        facial_area = _facial_area(representations)
    elif (
        isinstance(representations, np.ndarray)
        and representations.ndim == 2
        and len(representations)
    ):
        embedding_vector = representations[0]

    if embedding_vector is None:
        return None, facial_area

    try:
        normalized = np.array([float(value) for value in embedding_vector], dtype=np.float64)
    except (TypeError, ValueError):
        logger.debug("Unable to coerce embedding values to floats.")
        return None, facial_area

    if normalized.size == 0:
        return None, facial_area
    return normalized, facial_area


class OpenCVImageDecoder:
    """Decode uploaded JPEG/PNG bytes into a BGR array."""

    def decode(self, image_bytes: bytes) -> ArrayLike:
        if not image_bytes:
            raise InputError("Image data is required.", details={"field": "image"})
        buffer = np.frombuffer(bytes(image_bytes), dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if image is None or image.size == 0:
            raise InputError("Invalid image data.", details={"field": "image"})
        return image


class DeepFaceDetector:
    def detect(self, image: ArrayLike) -> list[FaceDetection]:
        try:
            faces = _load_deepface().extract_faces(
                img_path=image,
                detector_backend=_deepface_detector(),
                enforce_detection=False,
                align=True,
            )
        except ImportError as exc:
            raise DetectionUnavailableError("DeepFace is not installed.") from exc

        detections: list[FaceDetection] = []
        for face in faces or []:
            area = _facial_area(face)
            if area is None:
                continue
            detections.append(
                FaceDetection(bounding_box=area, confidence=float(face.get("confidence") or 0.0))
            )
        return detections


class DeepFaceFeatureExtractor:
    def extract(self, image: ArrayLike, region: Optional[FaceRegion] = None) -> np.ndarray:
        face = crop_to_region(image, region)
        try:
            representations = _load_deepface().represent(
                img_path=face,
                model_name=_deepface_model(),
                detector_backend="skip",
                enforce_detection=False,
            )
        except ImportError as exc:
            raise FeatureExtractionError("DeepFace is not installed.") from exc

        embedding, _ = extract_embedding(representations)
        if embedding is None:
            raise FeatureExtractionError("No embedding was produced for the face.")
        return embedding


class DeepFaceAntiSpoofModel:
    """Liveness modality based on DeepFace's anti-spoofing classifier."""

    def analyze(self, image: ArrayLike, region: Optional[FaceRegion] = None) -> SubCheckResult:
        try:
            faces = _load_deepface().extract_faces(
                img_path=crop_to_region(image, region),
                detector_backend="skip",
                enforce_detection=False,
                anti_spoofing=True,
            )
        except ImportError as exc:
            raise LivenessUnavailableError("DeepFace is not installed.") from exc

        if not faces:
            raise LivenessUnavailableError("Anti-spoofing produced no result.")
        face = faces[0]
        is_real = bool(face.get("is_real", False))
        confidence = float(face.get("antispoof_score") or 0.0)
        score = confidence if is_real else 1.0 - confidence
        return SubCheckResult(score=score, passed=is_real, details={"antispoof_score": confidence})


class LaplacianTextureAnalyzer:
    """Prints and screen replays lose high-frequency skin texture (Laplacian variance)."""

    def __init__(
        self,
        min_sharpness: float = TEXTURE_SHARPNESS_MIN,
        reference_sharpness: float = TEXTURE_SHARPNESS_REFERENCE,
    ) -> None:
        self.min_sharpness = min_sharpness
        self.reference_sharpness = reference_sharpness

    def analyze(self, image: ArrayLike, region: Optional[FaceRegion] = None) -> SubCheckResult:
        gray = _to_grayscale(crop_to_region(image, region))
        if gray.size == 0:
            return SubCheckResult(score=0.0, passed=False, details={"error": "empty_region"})
        sharpness = float(cv2.Laplacian(gray, cv2.CV_64F).var())
        score = (
            min(1.0, sharpness / self.reference_sharpness) if self.reference_sharpness > 0 else 0.0
        )
        return SubCheckResult(
            score=score,
            passed=sharpness >= self.min_sharpness,
            details={"sharpness": round(sharpness, 3)},
        )


def estimate_pseudo_depth(gray: ArrayLike) -> ArrayLike:
    """Pseudo-depth map from the Laplacian of a Gaussian-blurred frame."""

    blurred = cv2.GaussianBlur(gray.astype(np.float32), (5, 5), 0)
    return np.abs(cv2.Laplacian(blurred, cv2.CV_64F))


class GradientDepthAnalyzer:
    """Flat presentations (prints, screens) show uniform pseudo-depth."""

    def __init__(
        self,
        variance_threshold: float = DEPTH_VARIANCE_MIN,
        max_flatness: float = DEPTH_FLATNESS_MAX,
    ) -> None:
        self.variance_threshold = variance_threshold
        self.max_flatness = max_flatness

    def analyze(self, image: ArrayLike, region: Optional[FaceRegion] = None) -> SubCheckResult:
        gray = _to_grayscale(crop_to_region(image, region))
        if gray.size == 0:
            return SubCheckResult(score=0.0, passed=False, details={"error": "empty_region"})

        depth_map = estimate_pseudo_depth(gray)
        mean_val = float(np.mean(depth_map))
        variance = float(np.var(depth_map))
        normalized_variance = variance / (mean_val**2) if mean_val > 0 else variance
        flatness = float(np.sum(depth_map < mean_val * 0.1) / depth_map.size)

        variance_factor = (
            min(1.0, normalized_variance / self.variance_threshold)
            if self.variance_threshold > 0
            else 0.5
        )
        score = variance_factor * 0.6 + (1.0 - flatness) * 0.4
        return SubCheckResult(
            score=score,
            passed=normalized_variance >= self.variance_threshold and flatness < self.max_flatness,
            details={
                "depth_variance": round(normalized_variance, 4),
                "flatness_ratio": round(flatness, 4),
            },
        )


__all__ = [
    "DeepFaceAntiSpoofModel",
    "DeepFaceDetector",
    "DeepFaceFeatureExtractor",
    "GradientDepthAnalyzer",
    "LaplacianTextureAnalyzer",
    "OpenCVImageDecoder",
    "estimate_pseudo_depth",
    "extract_embedding",
]
