"""Sentry configuration for production deployments of the attendance service.

Events and breadcrumbs are scrubbed before they leave the process: face images,
precise coordinates and bearer tokens must never reach the error tracker.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.django import DjangoIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import base as base_settings

__all__ = ["build_before_send", "initialize_sentry", "scrub_breadcrumb"]

FILTERED = "[Filtered]"

_SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie", "x-device-id"}
# Submission fields carrying biometric payloads or precise locations.
_SENSITIVE_FIELDS = {"image", "submissions", "latitude", "longitude", "address", "accuracy"}

EventProcessor = Callable[[dict[str, Any], Any], "dict[str, Any] | None"]


def _scrub_mapping(values: Any, keys: set[str]) -> None:
    if not isinstance(values, MutableMapping):
        return
    for key in list(values):
        if str(key).lower() in keys:
            values[key] = FILTERED


def scrub_breadcrumb(crumb: dict[str, Any], _hint: Any = None) -> dict[str, Any]:
    """Strip coordinates from attendance breadcrumbs; everything else passes through."""

    _scrub_mapping(crumb.get("data"), _SENSITIVE_FIELDS)
    return crumb


def build_before_send(send_default_pii: bool) -> EventProcessor:
    """Return the ``before_send`` hook scrubbing request and flow context."""

    def _before_send(event: dict[str, Any], _hint: Any) -> dict[str, Any] | None:
        request = event.get("request")
        if isinstance(request, Mapping):
            _scrub_mapping(request.get("headers"), _SENSITIVE_HEADERS)
            _scrub_mapping(request.get("data"), _SENSITIVE_FIELDS)
        contexts = event.get("contexts")
        if isinstance(contexts, Mapping):
            _scrub_mapping(contexts.get("attendance_flow"), _SENSITIVE_FIELDS)
        for crumb in (event.get("breadcrumbs") or {}).get("values", []) or []:
            scrub_breadcrumb(crumb)
        if not send_default_pii:
            event.pop("user", None)
        return event

    return _before_send


def initialize_sentry() -> None:
    """Initialise Sentry SDK when a DSN is supplied via the environment."""

    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return

    send_default_pii = base_settings._get_bool_env("SENTRY_SEND_DEFAULT_PII", default=False)

    sentry_sdk.init(
        dsn=dsn,
        environment=os.environ.get("SENTRY_ENVIRONMENT", "production"),
        release=os.environ.get("SENTRY_RELEASE"),
        integrations=[
            DjangoIntegration(transaction_style="url"),
            LoggingIntegration(level=None, event_level=logging.ERROR),
            CeleryIntegration(),
        ],
        traces_sample_rate=base_settings._get_float_env(
            "SENTRY_TRACES_SAMPLE_RATE", 0.0, minimum=0.0, maximum=1.0
        ),
        send_default_pii=send_default_pii,
        before_send=build_before_send(send_default_pii),
        before_breadcrumb=scrub_breadcrumb,
    )
    sentry_sdk.set_tag("face_data.key_reference", base_settings.FACE_DATA_KEY_REFERENCE)
