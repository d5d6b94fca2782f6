from __future__ import annotations

from contextvars import ContextVar


# "GET /api/schedule-slots" inside a request, a job label in scheduler threads.
current_endpoint: ContextVar[str] = ContextVar('current_endpoint', default='background')
