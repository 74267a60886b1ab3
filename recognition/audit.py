"""Append-only audit trail writer.

Audit writes are best-effort: a failure never rolls back or blocks the
operation being audited, but it is always logged at ERROR (forwarded to Sentry
by the logging integration) and counted in Prometheus.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from django.core.serializers.json import DjangoJSONEncoder
from django.db import DatabaseError, transaction

from users.models import AuditLogEntry

from . import monitoring

logger = logging.getLogger(__name__)

Severity = AuditLogEntry.Severity


@dataclass(frozen=True)
class RequestContext:
    """Network and device context attached to audit entries."""

    ip_address: Optional[str] = None
    user_agent: str = ""
    device_id: str = ""

    @classmethod
    def from_request(cls, request, device_id: str = "") -> "RequestContext":
        meta = getattr(request, "META", {}) or {}
        forwarded = meta.get("HTTP_X_FORWARDED_FOR", "")
        ip_address = forwarded.split(",")[0].strip() if forwarded else meta.get("REMOTE_ADDR")
        return cls(
            ip_address=ip_address or None,
            user_agent=str(meta.get("HTTP_USER_AGENT", ""))[:255],
            device_id=str(device_id or meta.get("HTTP_X_DEVICE_ID", ""))[:128],
        )


EMPTY_CONTEXT = RequestContext()


def _jsonable(values: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    if values is None:
        return None
    return json.loads(json.dumps(dict(values), cls=DjangoJSONEncoder))


class AuditRecorder:
    """Write :class:`users.models.AuditLogEntry` rows without ever raising."""

    def record(
        self,
        actor,
        action: str,
        resource_type: str = "",
        resource_id: Any = "",
        old_values: Optional[Mapping[str, Any]] = None,
        new_values: Optional[Mapping[str, Any]] = None,
        context: Optional[RequestContext] = None,
        severity: str = Severity.LOW,
        description: str = "",
    ) -> Optional[AuditLogEntry]:
        """Append one entry; returns ``None`` when the write failed."""

        context = context or EMPTY_CONTEXT
        actor_id = getattr(actor, "pk", actor)
        try:
            with transaction.atomic():
                return AuditLogEntry.objects.create(
                    actor_id=actor_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id="" if resource_id is None else str(resource_id),
                    old_values=_jsonable(old_values),
                    new_values=_jsonable(new_values),
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    device_id=context.device_id,
                    severity=severity,
                    description=description,
                )
        except (DatabaseError, TypeError, ValueError):
            monitoring.record_audit_write_failure(action)
            logger.error(
                "Failed to write audit entry %s for %s %s",
                action,
                resource_type,
                resource_id,
                exc_info=True,
            )
            return None


__all__ = ["AuditRecorder", "EMPTY_CONTEXT", "RequestContext", "Severity"]
