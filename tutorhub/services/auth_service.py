from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from datetime import timedelta

from tutorhub.config import settings
from tutorhub.core.time_provider import TimeProvider, default_time_provider
from tutorhub.models import Role


logger = logging.getLogger(__name__)

_VALID_ROLES = {role.value for role in Role}


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def _b64url_decode(value: str) -> bytes:
    padding = '=' * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode('ascii'))


def _sign(signing_input: bytes) -> bytes:
    return hmac.new(settings.auth_secret.encode('utf-8'), signing_input, hashlib.sha256).digest()


def _encode_jwt(payload: dict) -> str:
    header = {'alg': 'HS256', 'typ': 'JWT'}
    header_part = _b64url_encode(json.dumps(header, separators=(',', ':')).encode('utf-8'))
    payload_part = _b64url_encode(json.dumps(payload, separators=(',', ':')).encode('utf-8'))
    signature_part = _b64url_encode(_sign(f'{header_part}.{payload_part}'.encode('ascii')))
    return f'{header_part}.{payload_part}.{signature_part}'


def _decode_jwt(token: str) -> dict | None:
    try:
        header_part, payload_part, signature_part = token.split('.')
        provided_signature = _b64url_decode(signature_part)
    except (ValueError, binascii.Error):
        return None

    expected_signature = _sign(f'{header_part}.{payload_part}'.encode('ascii'))
    if not hmac.compare_digest(provided_signature, expected_signature):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_part).decode('utf-8'))
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None
    return payload


def create_session_token(
    user_id: int,
    role: str,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> str:
    normalized_role = str(role or '').strip().lower()
    if normalized_role not in _VALID_ROLES:
        raise ValueError(f'Unknown role: {role}')
    now = time_provider.now()
    return _encode_jwt(
        {
            'sub': int(user_id),
            'role': normalized_role,
            'iat': int(now.timestamp()),
            'exp': int((now + timedelta(hours=settings.auth_token_ttl_hours)).timestamp()),
        }
    )


def validate_session_token(
    token: str | None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict | None:
    """Resolve a bearer token into {user_id, role}; None when missing, forged or expired."""
    if not token:
        return None
    payload = _decode_jwt(token)
    if not payload:
        return None

    role = str(payload.get('role') or '').strip().lower()
    user_id = payload.get('sub')
    if role not in _VALID_ROLES or user_id is None:
        return None
    expires_at = payload.get('exp')
    if expires_at is not None and int(expires_at) <= int(time_provider.now().timestamp()):
        logger.info('session_token_expired user_id=%s', user_id)
        return None
    return {'user_id': int(user_id), 'role': role}
