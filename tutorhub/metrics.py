from __future__ import annotations

import functools
import logging
import time
from typing import Callable, TypeVar

from tutorhub.config import settings


logger = logging.getLogger('tutorhub.metrics')

T = TypeVar('T')


def timed_service(label: str, *, threshold_ms: int | None = None) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log `service_timer` when a call takes at least `threshold_ms` (default `metrics_slow_ms`)."""

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - started) * 1000.0
                limit = settings.metrics_slow_ms if threshold_ms is None else threshold_ms
                if duration_ms >= limit:
                    logger.info('service_timer label=%s duration_ms=%.2f', label, duration_ms)

        return wrapper

    return decorator


def run_timed_job(label: str, fn: Callable[[], T]) -> T:
    started = time.perf_counter()
    logger.info('job_start name=%s', label)
    status = 'ok'
    try:
        return fn()
    except Exception:
        status = 'failed'
        logger.exception('job_failed name=%s', label)
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000.0
        logger.info('job_end name=%s status=%s duration_ms=%.2f', label, status, duration_ms)
