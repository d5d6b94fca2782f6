from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from tutorhub.core.router_guard import http_error, is_admin, require_auth_user
from tutorhub.db import get_db
from tutorhub.errors import TutorhubError
from tutorhub.models import Role, WaitlistEntry, WaitlistStatus
from tutorhub.route_logging import EndpointNameRoute
from tutorhub.schemas import WaitlistJoinRequest, WaitlistManageRequest
from tutorhub.services import credit_ledger_service, waitlist_service


router = APIRouter(prefix='/api/waitlist', tags=['Waitlist'], route_class=EndpointNameRoute)


def _join_parties(db: Session, user: dict, payload: WaitlistJoinRequest) -> tuple[int, int]:
    role = user['role']
    user_id = int(user['user_id'])
    if role == Role.TEACHER.value:
        if payload.student_id is None:
            raise HTTPException(status_code=400, detail='student_id is required')
        return user_id, int(payload.student_id)
    if payload.teacher_id is None:
        raise HTTPException(status_code=400, detail='teacher_id is required')
    if role == Role.STUDENT.value:
        return int(payload.teacher_id), user_id
    if payload.student_id is None:
        raise HTTPException(status_code=400, detail='student_id is required')
    if role == Role.PARENT.value:
        linked = credit_ledger_service.list_credit_accounts(db, parent_id=user_id, student_id=int(payload.student_id))
        if not linked:
            raise HTTPException(status_code=403, detail='Student is not linked to this parent')
    elif role != Role.ADMIN.value:
        raise HTTPException(status_code=403, detail='Forbidden')
    return int(payload.teacher_id), int(payload.student_id)


@router.post('')
def api_join_waitlist(
    payload: WaitlistJoinRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    teacher_id, student_id = _join_parties(db, user, payload)
    try:
        return waitlist_service.join_waitlist(
            db,
            teacher_id=teacher_id,
            student_id=student_id,
            start_time=payload.start_time,
            end_time=payload.end_time,
            day_of_week=payload.day_of_week,
            schedule_slot_id=payload.schedule_slot_id,
            template_id=payload.template_id,
            preferred_date=payload.preferred_date,
            priority=payload.priority,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.get('')
def api_list_waitlist(
    request: Request,
    status: str = Query(default=WaitlistStatus.WAITING.value),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    user_id = int(user['user_id'])
    if user['role'] == Role.TEACHER.value:
        entries = waitlist_service.list_waitlist_entries(db, teacher_id=user_id, status=status)
    elif user['role'] == Role.STUDENT.value:
        entries = waitlist_service.list_waitlist_entries(db, student_id=user_id, status=status)
    elif is_admin(user):
        entries = waitlist_service.list_waitlist_entries(db, status=status)
    else:
        raise HTTPException(status_code=403, detail='Forbidden')
    return {'waitlist_entries': entries}


@router.put('')
def api_manage_waitlist(
    payload: WaitlistManageRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    try:
        return waitlist_service.manage_waitlist_entry(
            db,
            entry_id=payload.waitlist_id,
            action=payload.action,
            actor_user_id=int(user['user_id']),
            is_admin=is_admin(user),
            extend_hours=payload.extend_hours,
            notification_message=payload.notification_message,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.get('/{entry_id}/position')
def api_waitlist_position(
    entry_id: int,
    request: Request,
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    entry = db.query(WaitlistEntry).filter(WaitlistEntry.id == int(entry_id)).first()
    if entry is None:
        raise HTTPException(status_code=404, detail='Waitlist entry not found')
    if not is_admin(user) and int(user['user_id']) not in (int(entry.teacher_id), int(entry.student_id)):
        raise HTTPException(status_code=403, detail='Forbidden')
    return {
        'waitlist_id': entry.id,
        'status': entry.status,
        'position': waitlist_service.get_waitlist_position(db, entry.id),
    }
