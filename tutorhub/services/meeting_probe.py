from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from tutorhub.config import settings


logger = logging.getLogger(__name__)

CONFIDENCE_HIGH = 'high'
CONFIDENCE_MEDIUM = 'medium'
CONFIDENCE_LOW = 'low'


@dataclass(frozen=True)
class MeetingStatus:
    is_accessible: bool
    has_active_participants: bool
    confidence: str
    status_code: int | None = None
    error: str = ''

    @property
    def probe_failed(self) -> bool:
        return self.status_code is None and bool(self.error)


class MeetingActivityProbe(Protocol):
    def check(self, meeting_url: str) -> MeetingStatus:
        ...


def derive_confidence(is_accessible: bool, has_active_participants: bool) -> str:
    # An unreachable room is a strong "ended" signal; reachability alone says little about activity.
    if not is_accessible:
        return CONFIDENCE_HIGH
    if has_active_participants:
        return CONFIDENCE_HIGH
    return CONFIDENCE_MEDIUM


class HttpReachabilityProbe:
    """Default probe: HEAD the meeting URL and treat anything but 200 as inaccessible.

    There is no participant signal, so an accessible room is reported with
    medium confidence.
    """

    def __init__(self, *, timeout: float | None = None, user_agent: str | None = None) -> None:
        self.timeout = timeout if timeout is not None else settings.meeting_probe_timeout_seconds
        self.user_agent = user_agent or settings.meeting_probe_user_agent

    def _participant_signal(self, response: httpx.Response) -> bool:
        return False

    def check(self, meeting_url: str) -> MeetingStatus:
        try:
            response = httpx.head(
                meeting_url,
                headers={'User-Agent': self.user_agent},
                timeout=self.timeout,
                follow_redirects=True,
            )
        except httpx.HTTPError as exc:
            logger.warning('meeting_probe_failed url=%s error=%s', meeting_url, exc)
            return MeetingStatus(
                is_accessible=False,
                has_active_participants=False,
                confidence=derive_confidence(False, False),
                error=str(exc) or exc.__class__.__name__,
            )

        is_accessible = response.status_code == 200
        has_participants = is_accessible and self._participant_signal(response)
        return MeetingStatus(
            is_accessible=is_accessible,
            has_active_participants=has_participants,
            confidence=derive_confidence(is_accessible, has_participants),
            status_code=response.status_code,
        )


default_meeting_probe = HttpReachabilityProbe()
