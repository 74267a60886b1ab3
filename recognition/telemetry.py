"""Sentry breadcrumbs and scope helpers for the attendance flows."""

from __future__ import annotations

import logging
from typing import Mapping

import sentry_sdk

logger = logging.getLogger(__name__)


def record_breadcrumb(
    *,
    message: str,
    category: str,
    level: str = "info",
    data: Mapping[str, object] | None = None,
) -> None:
    """Add a breadcrumb to the active Sentry scope, swallowing integration errors."""

    try:
        sentry_sdk.add_breadcrumb(
            message=message,
            category=category,
            level=level,
            data=dict(data or {}),
        )
    except Exception:  # pragma: no cover - telemetry is best-effort
        logger.debug("Unable to add Sentry breadcrumb", exc_info=True)


def bind_request_to_scope(
    request,
    *,
    flow: str,
    extra: Mapping[str, object] | None = None,
) -> None:
    """Attach request metadata to the Sentry scope for easier triage."""

    try:
        context: dict[str, object] = {
            "path": getattr(request, "path", ""),
            "method": getattr(request, "method", ""),
            "flow": flow,
        }
        if extra:
            context.update(extra)
        sentry_sdk.set_context("attendance_flow", context)

        user = getattr(request, "user", None)
        if getattr(user, "is_authenticated", False):
            sentry_sdk.set_user({"id": getattr(user, "id", None), "username": user.get_username()})

        attendance_type = context.get("type")
        if attendance_type:
            sentry_sdk.set_tag("attendance.type", str(attendance_type))
    except Exception:  # pragma: no cover - telemetry must not break request handling
        logger.debug("Unable to bind request metadata to Sentry scope", exc_info=True)


__all__ = ["bind_request_to_scope", "record_breadcrumb"]
