from __future__ import annotations

from typing import Iterable

from fastapi import HTTPException, Request

from tutorhub.errors import RateLimitedError, TutorhubError
from tutorhub.services.auth_service import validate_session_token


def _resolve_token(request: Request) -> str | None:
    token = request.cookies.get('auth_session')
    if token:
        return token
    authorization = request.headers.get('authorization', '')
    if authorization.lower().startswith('bearer '):
        return authorization[7:].strip()
    return None


def require_auth_user(request: Request) -> dict:
    token = _resolve_token(request)
    session = validate_session_token(token)
    if not session:
        raise HTTPException(status_code=401, detail='Unauthorized')
    user_id = int(session.get('user_id') or 0)
    if user_id <= 0:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return {
        'user_id': user_id,
        'role': str(session.get('role') or '').strip().lower(),
    }


def require_role(user: dict, allowed_roles: set[str] | Iterable[str]) -> None:
    normalized = {str(role).strip().lower() for role in allowed_roles}
    if str(user.get('role') or '').strip().lower() not in normalized:
        raise HTTPException(status_code=403, detail='Forbidden')


def is_admin(user: dict) -> bool:
    return str(user.get('role') or '').lower() == 'admin'


def http_error(exc: TutorhubError) -> HTTPException:
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {'Retry-After': str(exc.detail.get('retry_after_seconds', 1))}
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail(), headers=headers)
