from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.core.time_provider import TimeProvider, default_time_provider
from tutorhub.core.time_range import to_minutes, weekday_name
from tutorhub.errors import ConflictError, DependencyError, ForbiddenError, NotFoundError, TutorhubError, ValidationError
from tutorhub.metrics import timed_service
from tutorhub.models import ScheduleSlot, SlotStatus
from tutorhub.services import notification_service, waitlist_service
from tutorhub.services.credit_ledger_service import get_credit_account
from tutorhub.services.slot_conflict_service import SlotRequest, check_conflicts, serialize_schedule_slot


logger = logging.getLogger(__name__)

MIN_BOOKING_BALANCE_HOURS = 1.0


def get_schedule_slot(db: Session, slot_id: int) -> ScheduleSlot | None:
    return db.query(ScheduleSlot).filter(ScheduleSlot.id == int(slot_id)).first()


def list_schedule_slots(
    db: Session,
    *,
    teacher_id: int,
    start_date: date,
    end_date: date,
    status: str | None = None,
) -> list[ScheduleSlot]:
    query = db.query(ScheduleSlot).filter(
        ScheduleSlot.teacher_id == int(teacher_id),
        ScheduleSlot.slot_date >= start_date,
        ScheduleSlot.slot_date <= end_date,
    )
    if status:
        query = query.filter(ScheduleSlot.status == status)
    return query.order_by(ScheduleSlot.slot_date.asc(), ScheduleSlot.start_time.asc(), ScheduleSlot.id.asc()).all()


def _raise_on_conflicts(
    db: Session,
    *,
    teacher_id: int,
    slot_date: date,
    start_time: time,
    end_time: time,
    exclude_slot_id: int | None,
    time_provider: TimeProvider,
) -> None:
    conflicts = check_conflicts(
        db,
        teacher_id=teacher_id,
        slots=[SlotRequest(weekday_name(slot_date), start_time, end_time, slot_date=slot_date)],
        check_time_slots=False,
        exclude_schedule_slot_id=exclude_slot_id,
        time_provider=time_provider,
    )
    if conflicts:
        raise ConflictError('Slot overlaps an existing slot', code='SLOT_CONFLICT', conflicts=conflicts)


def create_schedule_slot(
    db: Session,
    *,
    teacher_id: int,
    slot_date: date,
    start_time: time,
    end_time: time,
    subject: str | None = None,
    duration_minutes: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> ScheduleSlot:
    if end_time <= start_time:
        raise ValidationError('end_time must be after start_time')
    if datetime.combine(slot_date, start_time) <= time_provider.local_now():
        raise ValidationError('Cannot create a slot in the past')
    _raise_on_conflicts(
        db,
        teacher_id=teacher_id,
        slot_date=slot_date,
        start_time=start_time,
        end_time=end_time,
        exclude_slot_id=None,
        time_provider=time_provider,
    )

    row = ScheduleSlot(
        teacher_id=int(teacher_id),
        slot_date=slot_date,
        start_time=start_time,
        end_time=end_time,
        duration_minutes=duration_minutes or (to_minutes(end_time) - to_minutes(start_time)),
        subject=subject,
        status=SlotStatus.AVAILABLE.value,
        is_recurring=False,
    )
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('schedule_slot_create_failed teacher_id=%s date=%s', teacher_id, slot_date)
        raise DependencyError('Failed to create schedule slot') from exc
    db.refresh(row)
    logger.info('schedule_slot_created slot_id=%s teacher_id=%s date=%s', row.id, teacher_id, slot_date)
    return row


def update_schedule_slot(
    db: Session,
    *,
    slot_id: int,
    teacher_id: int,
    start_time: time | None = None,
    end_time: time | None = None,
    subject: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> ScheduleSlot:
    row = get_schedule_slot(db, slot_id)
    if row is None or int(row.teacher_id) != int(teacher_id):
        raise NotFoundError('Schedule slot not found', schedule_slot_id=slot_id)
    if row.status != SlotStatus.AVAILABLE.value:
        raise ValidationError(f'Schedule slot is {row.status}', schedule_slot_id=row.id, current_status=row.status)
    new_start = start_time or row.start_time
    new_end = end_time or row.end_time
    if new_end <= new_start:
        raise ValidationError('end_time must be after start_time')
    if (new_start, new_end) != (row.start_time, row.end_time):
        _raise_on_conflicts(
            db,
            teacher_id=teacher_id,
            slot_date=row.slot_date,
            start_time=new_start,
            end_time=new_end,
            exclude_slot_id=row.id,
            time_provider=time_provider,
        )
        row.start_time = new_start
        row.end_time = new_end
        row.duration_minutes = to_minutes(new_end) - to_minutes(new_start)
    if subject is not None:
        row.subject = subject
    db.commit()
    db.refresh(row)
    return row


def delete_schedule_slot(db: Session, *, slot_id: int, teacher_id: int) -> None:
    row = get_schedule_slot(db, slot_id)
    if row is None or int(row.teacher_id) != int(teacher_id):
        raise NotFoundError('Schedule slot not found', schedule_slot_id=slot_id)
    if row.status == SlotStatus.BOOKED.value:
        raise ValidationError('Booked slots must be cancelled before deletion', schedule_slot_id=row.id)
    db.delete(row)
    db.commit()
    logger.info('schedule_slot_deleted slot_id=%s', slot_id)


def _require_booking_credit(db: Session, *, teacher_id: int, student_id: int) -> None:
    account = get_credit_account(db, teacher_id=teacher_id, student_id=student_id)
    if account is None:
        inactive = get_credit_account(db, teacher_id=teacher_id, student_id=student_id, active_only=False)
        if inactive is not None:
            raise ValidationError(
                'Credit account is inactive',
                code='CREDIT_ACCOUNT_INACTIVE',
                account_id=inactive.id,
            )
        raise ValidationError(
            'No active credit account found for this student',
            code='NO_CREDIT_ACCOUNT',
            student_id=student_id,
            teacher_id=teacher_id,
        )
    if float(account.balance_hours or 0.0) < MIN_BOOKING_BALANCE_HOURS:
        raise ValidationError(
            'Insufficient credits',
            code='INSUFFICIENT_CREDITS',
            current_balance=float(account.balance_hours or 0.0),
            required=MIN_BOOKING_BALANCE_HOURS,
            account_id=account.id,
        )


@timed_service('book_schedule_slot')
def book_schedule_slot(
    db: Session,
    *,
    slot_id: int,
    student_id: int,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    slot = get_schedule_slot(db, slot_id)
    if slot is None:
        raise NotFoundError('Schedule slot not found', schedule_slot_id=slot_id)
    if slot.status != SlotStatus.AVAILABLE.value:
        raise ConflictError(
            'Schedule slot is not available',
            code='SLOT_NOT_AVAILABLE',
            schedule_slot_id=slot.id,
            current_status=slot.status,
        )
    now = time_provider.local_now()
    if datetime.combine(slot.slot_date, slot.start_time) <= now:
        raise ValidationError('Cannot book a slot that is in the past or currently ongoing', schedule_slot_id=slot.id)
    _require_booking_credit(db, teacher_id=slot.teacher_id, student_id=student_id)

    try:
        updated = (
            db.query(ScheduleSlot)
            .filter(ScheduleSlot.id == slot.id, ScheduleSlot.status == SlotStatus.AVAILABLE.value)
            .update(
                {
                    ScheduleSlot.status: SlotStatus.BOOKED.value,
                    ScheduleSlot.student_id: int(student_id),
                    ScheduleSlot.booked_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise ConflictError(
                'This slot has just been booked by someone else',
                code='SLOT_ALREADY_BOOKED',
                schedule_slot_id=slot.id,
            )
        db.commit()
    except TutorhubError:
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('schedule_slot_book_failed slot_id=%s', slot_id)
        raise DependencyError('Failed to book schedule slot', schedule_slot_id=slot_id) from exc

    db.refresh(slot)
    logger.info('schedule_slot_booked slot_id=%s student_id=%s', slot.id, student_id)
    try:
        notification_service.send_booking_confirmation(slot.id, student_id=int(student_id), teacher_id=slot.teacher_id)
    except Exception:
        logger.exception('booking_confirmation_failed slot_id=%s', slot.id)
    return {'message': 'Schedule slot booked successfully', 'slot': serialize_schedule_slot(slot)}


@timed_service('cancel_schedule_slot_booking')
def cancel_schedule_slot_booking(
    db: Session,
    *,
    slot_id: int,
    actor_user_id: int,
    is_admin: bool = False,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    slot = get_schedule_slot(db, slot_id)
    if slot is None:
        raise NotFoundError('Schedule slot not found', schedule_slot_id=slot_id)
    if not is_admin and int(actor_user_id) not in (int(slot.teacher_id), int(slot.student_id or 0)):
        raise ForbiddenError('Insufficient permissions', schedule_slot_id=slot.id)
    if slot.status != SlotStatus.BOOKED.value:
        raise ValidationError(f'Schedule slot is {slot.status}', schedule_slot_id=slot.id, current_status=slot.status)

    student_id = slot.student_id
    try:
        updated = (
            db.query(ScheduleSlot)
            .filter(ScheduleSlot.id == slot.id, ScheduleSlot.status == SlotStatus.BOOKED.value)
            .update(
                {
                    ScheduleSlot.status: SlotStatus.AVAILABLE.value,
                    ScheduleSlot.student_id: None,
                    ScheduleSlot.booked_at: None,
                    ScheduleSlot.reminder_sent_at: None,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise ConflictError('Slot booking changed while cancelling', code='SLOT_STATE_CHANGED', schedule_slot_id=slot.id)
        db.commit()
    except TutorhubError:
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('schedule_slot_cancel_failed slot_id=%s', slot_id)
        raise DependencyError('Failed to cancel booking', schedule_slot_id=slot_id) from exc

    db.refresh(slot)
    logger.info('schedule_slot_cancelled slot_id=%s student_id=%s', slot.id, student_id)

    notified_entry_id = None
    try:
        entry = waitlist_service.notify_next_in_waitlist(
            db,
            teacher_id=slot.teacher_id,
            day_of_week=weekday_name(slot.slot_date),
            start_time=slot.start_time,
            end_time=slot.end_time,
            available_date=slot.slot_date,
            time_provider=time_provider,
        )
        notified_entry_id = entry.id if entry else None
    except Exception:
        db.rollback()
        logger.exception('waitlist_promotion_failed slot_id=%s', slot.id)
    try:
        notification_service.send_booking_cancellation(slot.id, student_id=student_id, teacher_id=slot.teacher_id)
    except Exception:
        logger.exception('booking_cancellation_notice_failed slot_id=%s', slot.id)

    return {
        'message': 'Booking cancelled',
        'slot': serialize_schedule_slot(slot),
        'waitlist_notified_entry_id': notified_entry_id,
    }


def send_due_class_reminders(
    db: Session,
    *,
    lead_minutes: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, int]:
    lead = settings.class_reminder_lead_minutes if lead_minutes is None else int(lead_minutes)
    now = time_provider.local_now()
    horizon = now + timedelta(minutes=lead)
    rows = (
        db.query(ScheduleSlot)
        .filter(
            ScheduleSlot.status == SlotStatus.BOOKED.value,
            ScheduleSlot.reminder_sent_at.is_(None),
            ScheduleSlot.slot_date >= now.date(),
            ScheduleSlot.slot_date <= horizon.date(),
        )
        .order_by(ScheduleSlot.slot_date.asc(), ScheduleSlot.start_time.asc())
        .all()
    )
    due = [row for row in rows if now < datetime.combine(row.slot_date, row.start_time) <= horizon]
    sent = 0
    for row in due:
        try:
            delivered = notification_service.send_class_reminder(row.id, lead)
        except Exception:
            logger.exception('class_reminder_failed slot_id=%s', row.id)
            continue
        if delivered:
            row.reminder_sent_at = now
            sent += 1
    db.commit()
    return {'due': len(due), 'sent': sent}
