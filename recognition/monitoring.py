"""Prometheus metrics for attendance decisions and their dependencies."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


def _build_metrics() -> None:
    global REGISTRY
    global DECISION_COUNTER
    global DEPENDENCY_FAILURE_COUNTER
    global AUDIT_WRITE_FAILURE_COUNTER
    global NOTIFY_FAILURE_COUNTER
    global ENROLLMENT_COUNTER
    global REVIEW_COUNTER
    global STAGE_DURATION_HISTOGRAM

    REGISTRY = CollectorRegistry(auto_describe=True)

    DECISION_COUNTER = Counter(
        "attendance_decisions",
        "Attendance submissions by type and final outcome",
        labelnames=("type", "outcome"),
        registry=REGISTRY,
    )
    DEPENDENCY_FAILURE_COUNTER = Counter(
        "attendance_dependency_failures",
        "Failed or timed-out calls to models and the store",
        labelnames=("dependency",),
        registry=REGISTRY,
    )
    AUDIT_WRITE_FAILURE_COUNTER = Counter(
        "attendance_audit_write_failures",
        "Audit log entries that could not be persisted",
        labelnames=("action",),
        registry=REGISTRY,
    )
    NOTIFY_FAILURE_COUNTER = Counter(
        "attendance_notify_failures",
        "Admin notifications that could not be dispatched",
        labelnames=("topic",),
        registry=REGISTRY,
    )
    ENROLLMENT_COUNTER = Counter(
        "face_template_enrollments",
        "Face template enrollment attempts by outcome",
        labelnames=("outcome",),
        registry=REGISTRY,
    )
    REVIEW_COUNTER = Counter(
        "attendance_reviews",
        "Manual attendance review decisions",
        labelnames=("decision",),
        registry=REGISTRY,
    )
    STAGE_DURATION_HISTOGRAM = Histogram(
        "attendance_stage_duration_seconds",
        "Duration of each decision pipeline stage",
        labelnames=("stage",),
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        registry=REGISTRY,
    )


_build_metrics()


def reset_for_tests() -> None:
    """Reset all metrics (intended for test suites)."""

    _build_metrics()


def metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    labels = labels or {}
    sample = REGISTRY.get_sample_value(name, labels)
    if sample is None and not name.endswith("_total"):
        sample = REGISTRY.get_sample_value(f"{name}_total", labels)
    return sample


def record_decision(attendance_type: str, outcome: str) -> None:
    DECISION_COUNTER.labels(type=attendance_type, outcome=outcome).inc()


def record_dependency_failure(dependency: str) -> None:
    DEPENDENCY_FAILURE_COUNTER.labels(dependency=dependency).inc()


def record_audit_write_failure(action: str) -> None:
    AUDIT_WRITE_FAILURE_COUNTER.labels(action=action).inc()


def record_notify_failure(topic: str) -> None:
    NOTIFY_FAILURE_COUNTER.labels(topic=topic).inc()


def record_enrollment(outcome: str) -> None:
    ENROLLMENT_COUNTER.labels(outcome=outcome).inc()


def record_review(decision: str) -> None:
    REVIEW_COUNTER.labels(decision=decision).inc()


def observe_stage_duration(stage: str, duration: float) -> None:
    """Record how long a pipeline stage took."""

    STAGE_DURATION_HISTOGRAM.labels(stage=stage).observe(max(0.0, duration))


def export_metrics() -> bytes:
    """Serialise the Prometheus metrics registry."""

    return generate_latest(REGISTRY)


def prometheus_content_type() -> str:
    """Expose the correct ``Content-Type`` for Prometheus responses."""

    return CONTENT_TYPE_LATEST


__all__ = [
    "export_metrics",
    "metric_value",
    "observe_stage_duration",
    "prometheus_content_type",
    "record_audit_write_failure",
    "record_decision",
    "record_dependency_failure",
    "record_enrollment",
    "record_notify_failure",
    "record_review",
    "reset_for_tests",
]
