"""Translate service errors into the JSON error envelope used by every endpoint."""

from __future__ import annotations

import logging

from rest_framework import exceptions, status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from recognition.errors import AttendanceError, DependencyError

logger = logging.getLogger(__name__)


def _envelope(code: str, message: str, details=None) -> dict:
    payload = {"success": False, "code": code, "message": message}
    if details:
        payload["details"] = details
    return payload


def attendance_exception_handler(exc, context):
    """DRF exception handler producing ``{"success": false, "code", "message"}`` bodies."""

    if isinstance(exc, AttendanceError):
        if isinstance(exc, DependencyError):
            logger.warning(
                "Dependency unavailable while handling %s: %s", context.get("view"), exc.code
            )
        return Response(exc.as_dict(), status=exc.http_status)

    if isinstance(exc, exceptions.ValidationError):
        return Response(
            _envelope("INVALID_INPUT", "The submission is invalid.", exc.detail),
            status=status.HTTP_400_BAD_REQUEST,
        )

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, (exceptions.NotAuthenticated, exceptions.AuthenticationFailed)):
        code = "NOT_AUTHENTICATED"
    elif isinstance(exc, exceptions.PermissionDenied):
        code = "PERMISSION_DENIED"
    elif isinstance(exc, exceptions.NotFound):
        code = "NOT_FOUND"
    elif isinstance(exc, exceptions.Throttled):
        code = "RATE_LIMITED"
    else:
        code = str(getattr(exc, "default_code", "error")).upper()
    detail = getattr(exc, "detail", None)
    message = str(detail) if isinstance(detail, str) else "The request could not be processed."
    response.data = _envelope(code, message, None if isinstance(detail, str) else detail)
    return response


__all__ = ["attendance_exception_handler"]
