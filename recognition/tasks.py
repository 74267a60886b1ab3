"""Background jobs for fanning attendance events out to admin observers."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from celery import shared_task

logger = logging.getLogger(__name__)

FEED_CACHE_PREFIX = "recognition:feed:"


def _feed_key(topic: str) -> str:
    return f"{FEED_CACHE_PREFIX}{topic}"


def _feed_history() -> int:
    return max(1, int(getattr(settings, "RECOGNITION_FEED_HISTORY", 100)))


def append_to_feed(topic: str, event: Mapping[str, Any]) -> int:
    """Prepend ``event`` to the cached feed for ``topic`` and return the feed length."""

    entry = {"topic": topic, "received_at": timezone.now().isoformat(), "event": dict(event)}
    feed = list(cache.get(_feed_key(topic)) or [])
    feed.insert(0, entry)
    del feed[_feed_history():]
    cache.set(_feed_key(topic), feed, timeout=None)
    return len(feed)


def recent_events(topic: str, limit: int | None = None) -> list[dict[str, Any]]:
    """Return the newest events published on ``topic``, newest first."""

    feed = list(cache.get(_feed_key(topic)) or [])
    if limit is not None:
        feed = feed[: max(0, int(limit))]
    return feed


@shared_task(bind=True, name="recognition.broadcast_event", ignore_result=True)
def broadcast_event(self, topic: str, event: Mapping[str, Any]) -> int:
    """Celery task delivering one event to the admin feed."""

    try:
        size = append_to_feed(topic, event)
    except Exception:
        logger.exception("Failed to append %s event to the admin feed.", topic)
        raise
    logger.debug("Delivered %s event (feed size %d)", topic, size)
    return size


__all__ = ["FEED_CACHE_PREFIX", "append_to_feed", "broadcast_event", "recent_events"]
