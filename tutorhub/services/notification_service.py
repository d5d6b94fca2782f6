"""Outbound booking and class notifications.

Delivery is a JSON POST to `notification_webhook_url`. Every call is best
effort: failures are logged and reported as False, never raised.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from tutorhub.config import settings


logger = logging.getLogger(__name__)


def _post_event(event: str, payload: dict[str, Any]) -> bool:
    url = (settings.notification_webhook_url or '').strip()
    if not url:
        logger.info('notification_skipped event=%s reason=no_webhook', event)
        return False
    try:
        response = httpx.post(
            url,
            json={'event': event, 'payload': payload},
            timeout=settings.notification_timeout_seconds,
        )
    except httpx.HTTPError:
        logger.exception('notification_failed', extra={'event': event})
        return False
    if response.status_code >= 400:
        logger.warning('notification_rejected event=%s status_code=%s', event, response.status_code)
        return False
    return True


def send_booking_confirmation(slot_id: int, *, student_id: int | None = None, teacher_id: int | None = None) -> bool:
    return _post_event('booking.confirmed', {'slot_id': slot_id, 'student_id': student_id, 'teacher_id': teacher_id})


def send_booking_cancellation(slot_id: int, *, student_id: int | None = None, teacher_id: int | None = None) -> bool:
    return _post_event('booking.cancelled', {'slot_id': slot_id, 'student_id': student_id, 'teacher_id': teacher_id})


def send_class_reminder(slot_id: int, lead_time_minutes: int) -> bool:
    return _post_event('class.reminder', {'slot_id': slot_id, 'lead_time_minutes': int(lead_time_minutes)})


def send_waitlist_notification(entry_id: int, *, student_id: int, teacher_id: int, message: str = '') -> bool:
    return _post_event(
        'waitlist.notified',
        {'waitlist_entry_id': entry_id, 'student_id': student_id, 'teacher_id': teacher_id, 'message': message},
    )
