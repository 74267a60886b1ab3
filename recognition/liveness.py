"""Liveness / anti-spoofing aggregation for the attendance pipeline."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping, Optional

from django.conf import settings

from .capabilities import ArrayLike, FaceRegion, SubCheckResult, SubModel
from .errors import LivenessUnavailableError
from .timeouts import call_with_timeout

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: Mapping[str, float] = {"liveness": 0.4, "texture": 0.3, "depth": 0.3}
DEFAULT_THRESHOLD = 0.75


@dataclass(frozen=True)
class LivenessReport:
    """Composite result of the three liveness modalities.

    ``is_live`` requires the weighted ``overall_score`` to clear the threshold
    AND every individual sub-check to pass; a single failing modality fails the
    whole check even when the weighted score is high.
    """

    liveness_score: float
    texture_score: float
    depth_score: float
    overall_score: float
    is_live: bool
    passed: bool
    threshold: float
    checks: dict[str, bool] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _normalise_score(name: str, result: Any) -> SubCheckResult:
    if not isinstance(result, SubCheckResult):
        raise LivenessUnavailableError(details={"dependency": name, "reason": "invalid_result"})
    try:
        score = float(result.score)
    except (TypeError, ValueError) as exc:
        raise LivenessUnavailableError(
            details={"dependency": name, "reason": "invalid_score"}
        ) from exc
    if not math.isfinite(score):
        raise LivenessUnavailableError(details={"dependency": name, "reason": "invalid_score"})
    return SubCheckResult(score=min(max(score, 0.0), 1.0), passed=bool(result.passed))


class LivenessAggregator:
    """Combine the liveness model, texture and depth analyzers into one decision."""

    def __init__(
        self,
        liveness_model: SubModel,
        texture_analyzer: SubModel,
        depth_analyzer: SubModel,
        *,
        threshold: Optional[float] = None,
        weights: Optional[Mapping[str, float]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.liveness_model = liveness_model
        self.texture_analyzer = texture_analyzer
        self.depth_analyzer = depth_analyzer
        self.threshold = float(
            threshold
            if threshold is not None
            else getattr(settings, "RECOGNITION_LIVENESS_THRESHOLD", DEFAULT_THRESHOLD)
        )
        configured = weights or getattr(settings, "RECOGNITION_LIVENESS_WEIGHTS", DEFAULT_WEIGHTS)
        self.weights = {
            key: float(configured.get(key, default)) for key, default in DEFAULT_WEIGHTS.items()
        }
        self.timeout = timeout

    def _run(
        self, name: str, model: SubModel, sample: ArrayLike, region: Optional[FaceRegion]
    ) -> SubCheckResult:
        result = call_with_timeout(
            model.analyze,
            sample,
            region,
            error_cls=LivenessUnavailableError,
            label=f"liveness.{name}",
            timeout=self.timeout,
        )
        return _normalise_score(name, result)

    def assess(self, sample: ArrayLike, face_region: Optional[FaceRegion] = None) -> LivenessReport:
        """Score ``sample`` with every modality.

        Raises:
            LivenessUnavailableError: when any sub-model errors or times out. The
                check never defaults to a pass.
        """

        liveness = self._run("liveness", self.liveness_model, sample, face_region)
        texture = self._run("texture", self.texture_analyzer, sample, face_region)
        depth = self._run("depth", self.depth_analyzer, sample, face_region)

        overall = (
            self.weights["liveness"] * liveness.score
            + self.weights["texture"] * texture.score
            + self.weights["depth"] * depth.score
        )
        checks = {
            "liveness": liveness.passed,
            "texture": texture.passed,
            "depth": depth.passed,
        }
        is_live = overall > self.threshold and all(checks.values())

        report = LivenessReport(
            liveness_score=round(liveness.score, 4),
            texture_score=round(texture.score, 4),
            depth_score=round(depth.score, 4),
            overall_score=round(overall, 4),
            is_live=is_live,
            passed=is_live,
            threshold=self.threshold,
            checks=checks,
        )
        if not is_live:
            failed = sorted(name for name, ok in checks.items() if not ok)
            logger.info(
                "Liveness check failed (overall=%.3f, failed_checks=%s)",
                overall,
                ",".join(failed) or "none",
            )
        return report


__all__ = ["DEFAULT_THRESHOLD", "DEFAULT_WEIGHTS", "LivenessAggregator", "LivenessReport"]
