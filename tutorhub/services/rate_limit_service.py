from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session

from tutorhub.core.time_provider import TimeProvider, default_time_provider
from tutorhub.errors import RateLimitedError
from tutorhub.models import RateLimitState


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


def check_rate_limit(
    db: Session,
    *,
    identifier: str,
    category: str,
    max_requests: int,
    window_seconds: int = 60,
    time_provider: TimeProvider = default_time_provider,
) -> RateLimitDecision:
    """Fixed-window counter stored per (identifier, category).

    Flushes but does not commit; the caller's unit of work owns the counter row.
    """
    normalized_identifier = str(identifier or '').strip() or 'unknown'
    normalized_category = str(category or '').strip() or 'default'
    max_allowed = max(1, int(max_requests or 1))
    window = max(1, int(window_seconds or 60))
    now = time_provider.local_now()

    row = (
        db.query(RateLimitState)
        .filter(
            RateLimitState.identifier == normalized_identifier,
            RateLimitState.category == normalized_category,
        )
        .with_for_update()
        .first()
    )

    if row is None:
        db.add(
            RateLimitState(
                identifier=normalized_identifier,
                category=normalized_category,
                window_start=now,
                request_count=1,
            )
        )
        db.flush()
        return RateLimitDecision(allowed=True)

    if (now - row.window_start).total_seconds() >= window:
        row.window_start = now
        row.request_count = 1
        db.flush()
        return RateLimitDecision(allowed=True)

    if int(row.request_count or 0) >= max_allowed:
        retry_after = max(1, int((row.window_start + timedelta(seconds=window) - now).total_seconds()))
        logger.warning(
            'rate_limit_blocked',
            extra={
                'identifier': normalized_identifier,
                'category': normalized_category,
                'max_requests': max_allowed,
                'window_seconds': window,
                'retry_after_seconds': retry_after,
            },
        )
        return RateLimitDecision(allowed=False, retry_after_seconds=retry_after)

    row.request_count = int(row.request_count or 0) + 1
    db.flush()
    return RateLimitDecision(allowed=True)


def enforce_rate_limit(
    db: Session,
    *,
    identifier: str,
    category: str,
    max_requests: int,
    window_seconds: int = 60,
    time_provider: TimeProvider = default_time_provider,
) -> None:
    decision = check_rate_limit(
        db,
        identifier=identifier,
        category=category,
        max_requests=max_requests,
        window_seconds=window_seconds,
        time_provider=time_provider,
    )
    db.commit()
    if not decision.allowed:
        raise RateLimitedError(
            f'Rate limit exceeded. Retry in {decision.retry_after_seconds} seconds.',
            retry_after_seconds=decision.retry_after_seconds,
        )
