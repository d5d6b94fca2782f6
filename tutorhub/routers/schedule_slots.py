from __future__ import annotations

from datetime import date, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.core.router_guard import http_error, is_admin, require_auth_user, require_role
from tutorhub.core.time_provider import default_time_provider
from tutorhub.db import get_db
from tutorhub.errors import TutorhubError
from tutorhub.models import Role, SlotStatus
from tutorhub.route_logging import EndpointNameRoute
from tutorhub.schemas import ScheduleSlotCreateRequest, ScheduleSlotUpdateRequest, SlotBookRequest
from tutorhub.services import credit_ledger_service, schedule_slot_service
from tutorhub.services.rate_limit_service import enforce_rate_limit
from tutorhub.services.slot_conflict_service import DEFAULT_LOOKAHEAD_DAYS, serialize_schedule_slot


router = APIRouter(prefix='/api/schedule-slots', tags=['Schedule Slots'], route_class=EndpointNameRoute)


def _require_teacher(request: Request) -> dict:
    user = require_auth_user(request)
    require_role(user, {Role.TEACHER.value})
    return user


def _booking_student_id(db: Session, user: dict, requested: int | None) -> int:
    role = user['role']
    user_id = int(user['user_id'])
    if role == Role.STUDENT.value:
        if requested is not None and int(requested) != user_id:
            raise HTTPException(status_code=403, detail='Students can only book for themselves')
        return user_id
    if requested is None:
        raise HTTPException(status_code=400, detail='student_id is required')
    if role == Role.PARENT.value:
        linked = credit_ledger_service.list_credit_accounts(db, parent_id=user_id, student_id=int(requested))
        if not linked:
            raise HTTPException(status_code=403, detail='Student is not linked to this parent')
    elif role not in (Role.TEACHER.value, Role.ADMIN.value):
        raise HTTPException(status_code=403, detail='Forbidden')
    return int(requested)


@router.get('')
def api_list_schedule_slots(
    request: Request,
    teacher_id: int | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    if user['role'] == Role.TEACHER.value:
        target_teacher_id = int(user['user_id'])
    elif teacher_id is None:
        raise HTTPException(status_code=400, detail='teacher_id is required')
    else:
        target_teacher_id = int(teacher_id)
        if not is_admin(user):
            status = SlotStatus.AVAILABLE.value
    start = start_date or default_time_provider.today()
    end = end_date or (start + timedelta(days=DEFAULT_LOOKAHEAD_DAYS))
    if end < start:
        raise HTTPException(status_code=400, detail='end_date must not be before start_date')
    rows = schedule_slot_service.list_schedule_slots(
        db,
        teacher_id=target_teacher_id,
        start_date=start,
        end_date=end,
        status=status,
    )
    return {'slots': [serialize_schedule_slot(row) for row in rows]}


@router.post('')
def api_create_schedule_slot(
    payload: ScheduleSlotCreateRequest,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    try:
        row = schedule_slot_service.create_schedule_slot(
            db,
            teacher_id=int(user['user_id']),
            slot_date=payload.date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            subject=payload.subject,
            duration_minutes=payload.duration_minutes,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return {'slot': serialize_schedule_slot(row)}


@router.patch('/{slot_id}')
def api_update_schedule_slot(
    slot_id: int,
    payload: ScheduleSlotUpdateRequest,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    try:
        row = schedule_slot_service.update_schedule_slot(
            db,
            slot_id=slot_id,
            teacher_id=int(user['user_id']),
            start_time=payload.start_time,
            end_time=payload.end_time,
            subject=payload.subject,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return {'slot': serialize_schedule_slot(row)}


@router.delete('/{slot_id}')
def api_delete_schedule_slot(
    slot_id: int,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    try:
        schedule_slot_service.delete_schedule_slot(db, slot_id=slot_id, teacher_id=int(user['user_id']))
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return {'ok': True}


@router.post('/{slot_id}/book')
def api_book_schedule_slot(
    slot_id: int,
    request: Request,
    payload: SlotBookRequest | None = None,
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    student_id = _booking_student_id(db, user, payload.student_id if payload else None)
    try:
        enforce_rate_limit(
            db,
            identifier=f"user:{user['user_id']}",
            category='booking',
            max_requests=settings.rate_limit_booking_per_minute,
            window_seconds=60,
        )
        return schedule_slot_service.book_schedule_slot(db, slot_id=slot_id, student_id=student_id)
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.post('/{slot_id}/cancel')
def api_cancel_schedule_slot_booking(
    slot_id: int,
    request: Request,
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    require_role(user, {Role.TEACHER.value, Role.STUDENT.value, Role.ADMIN.value})
    try:
        return schedule_slot_service.cancel_schedule_slot_booking(
            db,
            slot_id=slot_id,
            actor_user_id=int(user['user_id']),
            is_admin=is_admin(user),
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
