"""django-ratelimit protection for the attendance submission endpoints."""

from __future__ import annotations

import logging
from functools import wraps

from django.conf import settings

from django_ratelimit.core import is_ratelimited
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)

RATE_LIMIT_GROUP = "recognition.attendance"


def attendance_rate_limited(method):
    """Limit a DRF view method per user (or client IP when anonymous).

    The limit comes from ``RECOGNITION_ATTENDANCE_RATE_LIMIT``; an empty value or
    ``RATELIMIT_ENABLE = False`` turns the check off.
    """

    @wraps(method)
    def _wrapped(view, request, *args, **kwargs):
        rate = getattr(settings, "RECOGNITION_ATTENDANCE_RATE_LIMIT", "5/m")
        if not rate:
            return method(view, request, *args, **kwargs)

        was_limited = is_ratelimited(
            request=request,
            group=RATE_LIMIT_GROUP,
            key="user_or_ip",
            rate=rate,
            method=["POST"],
            increment=True,
        )
        if was_limited:
            logger.warning(
                "Attendance rate limit triggered for %s",
                (
                    request.user
                    if getattr(request, "user", None) and request.user.is_authenticated
                    else request.META.get("REMOTE_ADDR", "unknown")
                ),
            )
            return Response(
                {
                    "success": False,
                    "code": "RATE_LIMITED",
                    "message": "Too many attendance attempts. Please wait.",
                },
                status=status.HTTP_429_TOO_MANY_REQUESTS,
            )
        return method(view, request, *args, **kwargs)

    return _wrapped


__all__ = ["RATE_LIMIT_GROUP", "attendance_rate_limited"]
