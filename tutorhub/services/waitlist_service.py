from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.core.time_provider import TimeProvider, default_time_provider
from tutorhub.core.time_range import WEEKDAY_NAMES, weekday_index, weekday_name
from tutorhub.errors import ConflictError, DependencyError, ForbiddenError, NotFoundError, TutorhubError, ValidationError
from tutorhub.models import ScheduleSlot, SlotStatus, WaitlistEntry, WaitlistStatus
from tutorhub.services import notification_service


logger = logging.getLogger(__name__)

ACTION_NOTIFY = 'notify'
ACTION_FULFILL = 'fulfill'
ACTION_REMOVE = 'remove'
ACTION_EXTEND = 'extend'
ACTIONS = (ACTION_NOTIFY, ACTION_FULFILL, ACTION_REMOVE, ACTION_EXTEND)
DEFAULT_EXTEND_HOURS = 24
_OPEN_STATUSES = (WaitlistStatus.WAITING.value, WaitlistStatus.NOTIFIED.value)


def _window_filter(teacher_id: int, day_of_week: str, start_time: time, end_time: time):
    return and_(
        WaitlistEntry.teacher_id == int(teacher_id),
        WaitlistEntry.day_of_week == day_of_week,
        WaitlistEntry.start_time == start_time,
        WaitlistEntry.end_time == end_time,
    )


def serialize_waitlist_entry(row: WaitlistEntry, *, position: int | None = None) -> dict[str, Any]:
    payload = {
        'id': row.id,
        'teacher_id': row.teacher_id,
        'student_id': row.student_id,
        'schedule_slot_id': row.schedule_slot_id,
        'template_id': row.template_id,
        'preferred_date': row.preferred_date.isoformat() if row.preferred_date else None,
        'day_of_week': row.day_of_week,
        'start_time': row.start_time.strftime('%H:%M'),
        'end_time': row.end_time.strftime('%H:%M'),
        'priority': row.priority,
        'status': row.status,
        'created_at': row.created_at.isoformat() if row.created_at else None,
        'expires_at': row.expires_at.isoformat() if row.expires_at else None,
        'notified_at': row.notified_at.isoformat() if row.notified_at else None,
        'fulfilled_at': row.fulfilled_at.isoformat() if row.fulfilled_at else None,
    }
    if position is not None:
        payload['position'] = position
    return payload


def compute_position(db: Session, entry: WaitlistEntry) -> int:
    """1 + waiting entries in the same window ranked ahead: higher priority, then earlier created_at, then id."""
    ahead = (
        db.query(WaitlistEntry)
        .filter(
            _window_filter(entry.teacher_id, entry.day_of_week, entry.start_time, entry.end_time),
            WaitlistEntry.status == WaitlistStatus.WAITING.value,
            WaitlistEntry.id != entry.id,
            or_(
                WaitlistEntry.priority > entry.priority,
                and_(WaitlistEntry.priority == entry.priority, WaitlistEntry.created_at < entry.created_at),
                and_(
                    WaitlistEntry.priority == entry.priority,
                    WaitlistEntry.created_at == entry.created_at,
                    WaitlistEntry.id < entry.id,
                ),
            ),
        )
        .count()
    )
    return ahead + 1


def get_waitlist_position(db: Session, entry_id: int) -> int | None:
    entry = db.query(WaitlistEntry).filter(WaitlistEntry.id == int(entry_id)).first()
    if entry is None:
        return None
    return compute_position(db, entry)


def _canonical_day(value: str) -> str:
    try:
        return WEEKDAY_NAMES[weekday_index(value)]
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _open_matching_slot(
    db: Session,
    *,
    teacher_id: int,
    day_of_week: str,
    start_time: time,
    end_time: time,
    preferred_date: date | None,
    today: date,
) -> ScheduleSlot | None:
    query = db.query(ScheduleSlot).filter(
        ScheduleSlot.teacher_id == int(teacher_id),
        ScheduleSlot.status == SlotStatus.AVAILABLE.value,
        ScheduleSlot.start_time == start_time,
        ScheduleSlot.end_time == end_time,
        ScheduleSlot.slot_date >= today,
    )
    if preferred_date is not None:
        query = query.filter(ScheduleSlot.slot_date == preferred_date)
    for row in query.order_by(ScheduleSlot.slot_date.asc()).all():
        if weekday_name(row.slot_date) == day_of_week:
            return row
    return None


def join_waitlist(
    db: Session,
    *,
    teacher_id: int,
    student_id: int,
    start_time: time | None = None,
    end_time: time | None = None,
    day_of_week: str | None = None,
    schedule_slot_id: int | None = None,
    template_id: int | None = None,
    preferred_date: date | None = None,
    priority: int = 1,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    now = time_provider.local_now()

    if schedule_slot_id:
        slot = (
            db.query(ScheduleSlot)
            .filter(ScheduleSlot.id == int(schedule_slot_id), ScheduleSlot.teacher_id == int(teacher_id))
            .first()
        )
        if slot is None:
            raise NotFoundError('Schedule slot not found', schedule_slot_id=schedule_slot_id)
        if slot.status != SlotStatus.BOOKED.value:
            raise ValidationError('Slot is still available for booking', code='SLOT_AVAILABLE', schedule_slot_id=slot.id)
        day_of_week = weekday_name(slot.slot_date)
        start_time = slot.start_time
        end_time = slot.end_time
        preferred_date = preferred_date or slot.slot_date
    else:
        if start_time is None or end_time is None:
            raise ValidationError('start_time and end_time are required')
        if not day_of_week and preferred_date is None:
            raise ValidationError('day_of_week or preferred_date is required')
        day_of_week = _canonical_day(day_of_week) if day_of_week else weekday_name(preferred_date)
        if end_time <= start_time:
            raise ValidationError('end_time must be after start_time')
        open_slot = _open_matching_slot(
            db,
            teacher_id=teacher_id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            preferred_date=preferred_date,
            today=now.date(),
        )
        if open_slot is not None:
            raise ValidationError('Slot is still available for booking', code='SLOT_AVAILABLE', schedule_slot_id=open_slot.id)

    existing = (
        db.query(WaitlistEntry)
        .filter(
            _window_filter(teacher_id, day_of_week, start_time, end_time),
            WaitlistEntry.student_id == int(student_id),
            WaitlistEntry.status == WaitlistStatus.WAITING.value,
        )
        .first()
    )
    if existing is not None:
        raise ConflictError(
            'Student is already on waitlist for this time slot',
            code='ALREADY_ON_WAITLIST',
            waitlist_entry_id=existing.id,
        )

    entry = WaitlistEntry(
        teacher_id=int(teacher_id),
        student_id=int(student_id),
        schedule_slot_id=int(schedule_slot_id) if schedule_slot_id else None,
        template_id=int(template_id) if template_id else None,
        preferred_date=preferred_date,
        day_of_week=day_of_week,
        start_time=start_time,
        end_time=end_time,
        priority=max(1, int(priority or 1)),
        status=WaitlistStatus.WAITING.value,
        created_at=now,
        expires_at=now + timedelta(days=settings.waitlist_default_expiry_days),
    )
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('waitlist_join_failed teacher_id=%s student_id=%s', teacher_id, student_id)
        raise DependencyError('Failed to join waitlist') from exc
    db.refresh(entry)

    position = compute_position(db, entry)
    logger.info('waitlist_joined entry_id=%s position=%s', entry.id, position)
    return {
        'waitlist_entry': serialize_waitlist_entry(entry, position=position),
        'position': position,
        'message': f'Added to waitlist. You are #{position} in line.',
    }


def _mark_notified(entry: WaitlistEntry, now: datetime) -> None:
    entry.status = WaitlistStatus.NOTIFIED.value
    entry.notified_at = now
    entry.expires_at = now + timedelta(hours=settings.waitlist_response_hours)


def _send_notification(entry: WaitlistEntry, message: str = '') -> None:
    try:
        notification_service.send_waitlist_notification(
            entry.id,
            student_id=entry.student_id,
            teacher_id=entry.teacher_id,
            message=message,
        )
    except Exception:
        logger.exception('waitlist_notification_failed entry_id=%s', entry.id)


def notify_next_in_waitlist(
    db: Session,
    *,
    teacher_id: int,
    day_of_week: str,
    start_time: time,
    end_time: time,
    available_date: date | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> WaitlistEntry | None:
    """Promote the best waiting entry for the window to notified; returns it, or None if nobody waits."""
    query = db.query(WaitlistEntry).filter(
        _window_filter(teacher_id, _canonical_day(day_of_week), start_time, end_time),
        WaitlistEntry.status == WaitlistStatus.WAITING.value,
    )
    if available_date is not None:
        query = query.filter(or_(WaitlistEntry.preferred_date == available_date, WaitlistEntry.preferred_date.is_(None)))
    entry = (
        query.order_by(WaitlistEntry.priority.desc(), WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc())
        .with_for_update()
        .first()
    )
    if entry is None:
        return None

    _mark_notified(entry, time_provider.local_now())
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DependencyError('Failed to notify waitlist entry', waitlist_entry_id=entry.id) from exc
    db.refresh(entry)
    logger.info('waitlist_notified entry_id=%s student_id=%s', entry.id, entry.student_id)
    _send_notification(entry)
    return entry


def manage_waitlist_entry(
    db: Session,
    *,
    entry_id: int,
    action: str,
    actor_user_id: int,
    is_admin: bool = False,
    extend_hours: int | None = None,
    notification_message: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    if action not in ACTIONS:
        raise ValidationError('Invalid action', action=action)
    entry = db.query(WaitlistEntry).filter(WaitlistEntry.id == int(entry_id)).with_for_update().first()
    if entry is None:
        raise NotFoundError('Waitlist entry not found', waitlist_entry_id=entry_id)
    if not is_admin and int(actor_user_id) not in (int(entry.teacher_id), int(entry.student_id)):
        raise ForbiddenError('Insufficient permissions', waitlist_entry_id=entry.id)

    now = time_provider.local_now()
    send_after_commit = False
    try:
        if action == ACTION_REMOVE:
            db.delete(entry)
            db.commit()
            logger.info('waitlist_removed entry_id=%s', entry_id)
            return {'message': 'Removed from waitlist', 'waitlist_entry': None}

        if entry.status not in _OPEN_STATUSES:
            raise ValidationError(
                f'Waitlist entry is already {entry.status}',
                waitlist_entry_id=entry.id,
                current_status=entry.status,
            )

        if action == ACTION_NOTIFY:
            _mark_notified(entry, now)
            send_after_commit = True
            message = 'Student notified about available slot'
        elif action == ACTION_FULFILL:
            entry.status = WaitlistStatus.FULFILLED.value
            entry.fulfilled_at = now
            message = 'Waitlist entry marked as fulfilled'
        else:
            hours = DEFAULT_EXTEND_HOURS if extend_hours is None else int(extend_hours)
            if not 1 <= hours <= settings.waitlist_max_extend_hours:
                raise ValidationError(f'extend_hours must be between 1 and {settings.waitlist_max_extend_hours}')
            base = entry.expires_at if entry.expires_at and entry.expires_at > now else now
            entry.expires_at = base + timedelta(hours=hours)
            message = f'Waitlist entry extended by {hours} hours'
        db.commit()
    except TutorhubError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('waitlist_manage_failed entry_id=%s action=%s', entry_id, action)
        raise DependencyError('Failed to update waitlist entry', waitlist_entry_id=entry_id) from exc

    db.refresh(entry)
    if send_after_commit:
        _send_notification(entry, notification_message or '')
    logger.info('waitlist_managed entry_id=%s action=%s status=%s', entry.id, action, entry.status)
    return {'message': message, 'waitlist_entry': serialize_waitlist_entry(entry, position=compute_position(db, entry))}


def list_waitlist_entries(
    db: Session,
    *,
    teacher_id: int | None = None,
    student_id: int | None = None,
    status: str = WaitlistStatus.WAITING.value,
) -> list[dict[str, Any]]:
    query = db.query(WaitlistEntry).filter(WaitlistEntry.status == status)
    if teacher_id:
        query = query.filter(WaitlistEntry.teacher_id == int(teacher_id))
    if student_id:
        query = query.filter(WaitlistEntry.student_id == int(student_id))
    rows = query.order_by(WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc()).all()
    return [serialize_waitlist_entry(row, position=compute_position(db, row)) for row in rows]


def expire_waitlist_entries(db: Session, *, time_provider: TimeProvider = default_time_provider) -> int:
    now = time_provider.local_now()
    rows = (
        db.query(WaitlistEntry)
        .filter(
            WaitlistEntry.status.in_(_OPEN_STATUSES),
            WaitlistEntry.expires_at.isnot(None),
            WaitlistEntry.expires_at < now,
        )
        .all()
    )
    for row in rows:
        row.status = WaitlistStatus.EXPIRED.value
    db.commit()
    if rows:
        logger.info('waitlist_expired count=%s', len(rows))
    return len(rows)
