"""Capability interfaces consumed by the attendance decision pipeline.

Face detection, feature extraction and the liveness sub-models are bound at
composition time (see :mod:`recognition.services`). Production binds the
adapters in :mod:`recognition.inference`; tests bind deterministic fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

ArrayLike = np.ndarray

#: Bounding box with integer ``x``, ``y``, ``w`` and ``h`` keys.
FaceRegion = Mapping[str, int]


@dataclass(frozen=True)
class FaceDetection:
    """A single face returned by a :class:`FaceDetector`."""

    bounding_box: dict[str, int]
    confidence: float


@dataclass(frozen=True)
class SubCheckResult:
    """Score in ``[0, 1]`` and pass flag produced by one liveness modality."""

    score: float
    passed: bool
    details: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ImageDecoder(Protocol):
    def decode(self, image_bytes: bytes) -> ArrayLike:
        """Return a BGR image or raise ``InputError`` for undecodable bytes."""


@runtime_checkable
class FaceDetector(Protocol):
    def detect(self, image: ArrayLike) -> Sequence[FaceDetection]:
        ...


@runtime_checkable
class FeatureExtractor(Protocol):
    def extract(self, image: ArrayLike, region: Optional[FaceRegion] = None) -> Sequence[float]:
        ...


@runtime_checkable
class SubModel(Protocol):
    """Shared shape of the liveness, texture and depth analyzers."""

    def analyze(self, image: ArrayLike, region: Optional[FaceRegion] = None) -> SubCheckResult:
        ...


LivenessModel = SubModel
TextureAnalyzer = SubModel
DepthAnalyzer = SubModel


@runtime_checkable
class Notifier(Protocol):
    def publish(self, topic: str, event: Mapping[str, Any]) -> None:
        """Best-effort, at-most-once fan-out; must not block the caller on delivery."""


def crop_to_region(image: ArrayLike, region: Optional[FaceRegion]) -> ArrayLike:
    """Crop ``image`` to ``region`` when the box is usable, otherwise return it unchanged."""

    if not isinstance(region, Mapping):
        return image

    height, width = image.shape[:2]
    x = max(int(region.get("x", 0) or 0), 0)
    y = max(int(region.get("y", 0) or 0), 0)
    w = max(int(region.get("w", 0) or 0), 0)
    h = max(int(region.get("h", 0) or 0), 0)

    if w <= 0 or h <= 0:
        return image

    x2 = min(x + w, width)
    y2 = min(y + h, height)
    if x >= x2 or y >= y2:
        return image

    return image[y:y2, x:x2]


__all__ = [
    "ArrayLike",
    "DepthAnalyzer",
    "FaceDetection",
    "FaceDetector",
    "FaceRegion",
    "FeatureExtractor",
    "ImageDecoder",
    "LivenessModel",
    "Notifier",
    "SubCheckResult",
    "SubModel",
    "TextureAnalyzer",
    "crop_to_region",
]
