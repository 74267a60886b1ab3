"""Deadlines for model calls and bounded retries for idempotent store reads."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, Type, TypeVar

from django.conf import settings
from django.db import OperationalError

from . import monitoring
from .errors import AttendanceError, DependencyError, StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXECUTOR: Optional[ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is None:
            workers = int(getattr(settings, "RECOGNITION_MODEL_WORKERS", 8) or 8)
            _EXECUTOR = ThreadPoolExecutor(
                max_workers=max(1, workers), thread_name_prefix="recognition-model"
            )
        return _EXECUTOR


def model_timeout() -> float:
    return float(getattr(settings, "RECOGNITION_MODEL_TIMEOUT_SECONDS", 5.0))


def call_with_timeout(
    func: Callable[..., T],
    *args,
    error_cls: Type[DependencyError] = DependencyError,
    label: str = "model",
    timeout: Optional[float] = None,
    **kwargs,
) -> T:
    """Run ``func`` and fail closed when it errors or exceeds the deadline.

    Expected :class:`AttendanceError` subclasses raised by ``func`` propagate
    unchanged. Any other exception, and a timeout, become ``error_cls``. A
    non-positive timeout runs ``func`` inline without a deadline.
    """

    deadline = model_timeout() if timeout is None else float(timeout)
    try:
        if deadline <= 0:
            return func(*args, **kwargs)
        future = _get_executor().submit(func, *args, **kwargs)
        try:
            return future.result(timeout=deadline)
        except FutureTimeoutError as exc:
            future.cancel()
            monitoring.record_dependency_failure(label)
            logger.warning("%s call exceeded %.2fs deadline", label, deadline)
            raise error_cls(details={"dependency": label, "reason": "timeout"}) from exc
    except AttendanceError:
        raise
    except Exception as exc:
        monitoring.record_dependency_failure(label)
        logger.warning("%s call failed: %s", label, exc.__class__.__name__)
        raise error_cls(details={"dependency": label}) from exc


def retry_read(
    func: Callable[[], T],
    *,
    label: str = "store",
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """Run an idempotent store read, retrying ``OperationalError`` with exponential backoff.

    Never wrap writes with this helper; duplicate inserts are prevented by the
    store's unique constraints instead.
    """

    max_attempts = attempts or int(getattr(settings, "RECOGNITION_READ_RETRIES", 3))
    base_delay = (
        float(getattr(settings, "RECOGNITION_READ_RETRY_BACKOFF_SECONDS", 0.05))
        if backoff is None
        else backoff
    )
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except OperationalError as exc:
            if attempt >= max_attempts:
                monitoring.record_dependency_failure(label)
                logger.error("%s read failed after %d attempts", label, attempt)
                raise StoreUnavailableError(details={"dependency": label}) from exc
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "%s read failed (attempt %d/%d); retrying in %.2fs",
                label,
                attempt,
                max_attempts,
                delay,
            )
            if delay > 0:
                time.sleep(delay)
    raise StoreUnavailableError(details={"dependency": label})  # pragma: no cover


__all__ = ["call_with_timeout", "model_timeout", "retry_read"]
