"""Real-time notifier bindings for admin observers."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping

from django.core.serializers.json import DjangoJSONEncoder

from . import monitoring

logger = logging.getLogger(__name__)

ADMIN_TOPIC = "admin"


def _jsonable(event: Mapping[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(dict(event), cls=DjangoJSONEncoder))


class CeleryBroadcastNotifier:
    """Dispatch events through the ``recognition.broadcast_event`` Celery task.

    Delivery is best-effort and at-most-once: publishing is not retried while the
    broker is unreachable, and dispatch failures are logged and counted but never
    raised to the caller.
    """

    def publish(self, topic: str, event: Mapping[str, Any]) -> None:
        from .tasks import broadcast_event

        try:
            broadcast_event.apply_async((topic, _jsonable(event)), retry=False)
        except Exception:
            monitoring.record_notify_failure(topic)
            logger.warning("Unable to dispatch %s notification.", topic, exc_info=True)


class NullNotifier:
    """Notifier that drops every event; useful for management commands."""

    def publish(self, topic: str, event: Mapping[str, Any]) -> None:
        logger.debug("Dropping %s notification.", topic)


def safe_publish(notifier, topic: str, event: Mapping[str, Any]) -> None:
    """Publish through any notifier without letting delivery errors escape."""

    try:
        notifier.publish(topic, event)
    except Exception:
        monitoring.record_notify_failure(topic)
        logger.warning("Notifier %r failed for %s.", notifier, topic, exc_info=True)


__all__ = ["ADMIN_TOPIC", "CeleryBroadcastNotifier", "NullNotifier", "safe_publish"]
