from __future__ import annotations

from typing import Any


class TutorhubError(ValueError):
    kind = 'error'
    status_code = 400

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_detail(self) -> dict[str, Any]:
        payload = {'error': self.message, 'kind': self.kind}
        payload.update(self.detail)
        return payload


class ValidationError(TutorhubError):
    kind = 'validation'
    status_code = 400


class ConflictError(TutorhubError):
    kind = 'conflict'
    status_code = 409


class NotFoundError(TutorhubError):
    kind = 'not_found'
    status_code = 404


class DependencyError(TutorhubError):
    """Storage or network failure; the unit of work was rolled back and may be retried."""

    kind = 'dependency'
    status_code = 503


class RateLimitedError(TutorhubError):
    kind = 'rate_limited'
    status_code = 429


class ForbiddenError(TutorhubError):
    kind = 'forbidden'
    status_code = 403
