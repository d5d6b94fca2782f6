from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.core.router_guard import http_error, is_admin, require_auth_user, require_role
from tutorhub.core.time_provider import default_time_provider
from tutorhub.db import get_db
from tutorhub.errors import TutorhubError
from tutorhub.models import Role
from tutorhub.route_logging import EndpointNameRoute
from tutorhub.schemas import ClassSessionEndRequest, ClassSessionStartRequest, ExtensionEndRequest, ExtensionStartRequest
from tutorhub.services import class_session_service
from tutorhub.services.rate_limit_service import enforce_rate_limit
from tutorhub.services.settlement_service import settle_class_session


router = APIRouter(prefix='/api/class-sessions', tags=['Class Sessions'], route_class=EndpointNameRoute)

_TEACHER_ROLES = {Role.TEACHER.value, Role.ADMIN.value}


def _require_teacher_or_admin(request: Request) -> dict:
    user = require_auth_user(request)
    require_role(user, _TEACHER_ROLES)
    return user


def _acting_teacher_id(user: dict, teacher_id: int | None) -> int:
    if is_admin(user) and teacher_id:
        return int(teacher_id)
    if teacher_id is not None and int(teacher_id) != int(user['user_id']) and not is_admin(user):
        raise HTTPException(status_code=403, detail='Admin role required to act for another teacher')
    return int(user['user_id'])


def _rate_limit(db: Session, user: dict) -> None:
    enforce_rate_limit(
        db,
        identifier=f"user:{user['user_id']}",
        category='class_actions',
        max_requests=settings.rate_limit_class_actions_per_minute,
        window_seconds=60,
    )


@router.post('/start')
def api_start_class_session(
    payload: ClassSessionStartRequest,
    teacher_id: int | None = Query(default=None),
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    try:
        _rate_limit(db, user)
        row = class_session_service.start_class_session(
            db,
            teacher_id=_acting_teacher_id(user, teacher_id),
            meeting_url=payload.meeting_url,
            enrollment_id=payload.enrollment_id,
            student_id=payload.student_id,
            student_email=payload.student_email,
            manual_override=payload.manual_override,
            start_time=payload.start_time,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return {'ok': True, 'class_session': class_session_service.serialize_class_session(row)}


@router.post('/extension/start')
def api_extension_start(
    payload: ExtensionStartRequest,
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    try:
        _rate_limit(db, user)
        row = class_session_service.start_class_session(
            db,
            teacher_id=int(user['user_id']),
            meeting_url=payload.meeting_url,
            student_email=payload.student_email,
            source=class_session_service.SOURCE_EXTENSION,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return {'ok': True, 'class_session': class_session_service.serialize_class_session(row)}


@router.post('/extension/end')
def api_extension_end(
    payload: ExtensionEndRequest,
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    teacher_id = int(user['user_id'])
    session_id = payload.session_id
    if session_id is None:
        active = class_session_service.find_active_class_session(
            db,
            teacher_id=teacher_id,
            enrollment_id=payload.enrollment_id,
            meeting_url=payload.meeting_url,
            student_email=payload.student_email,
        )
        if active is None:
            raise HTTPException(status_code=404, detail='No active class session found')
        session_id = active.id
    try:
        _rate_limit(db, user)
        return class_session_service.end_class_session(
            db,
            session_id,
            teacher_id=teacher_id,
            end_time=payload.end_time,
            content=payload.content,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.post('/{session_id:int}/end')
def api_end_class_session(
    session_id: int,
    payload: ClassSessionEndRequest,
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    try:
        _rate_limit(db, user)
        result = class_session_service.end_class_session(
            db,
            session_id,
            teacher_id=None if is_admin(user) else int(user['user_id']),
            end_time=payload.end_time,
            content=payload.content,
            topics_covered=payload.topics_covered,
            homework_assigned=payload.homework_assigned,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return result


@router.post('/{session_id:int}/settle')
def api_settle_class_session(
    session_id: int,
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    row = class_session_service.get_class_session(db, session_id)
    if row is None or (not is_admin(user) and int(row.teacher_id) != int(user['user_id'])):
        raise HTTPException(status_code=404, detail='Class session not found')
    try:
        result = settle_class_session(db, session_id, performed_by=int(user['user_id']))
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return result.as_dict()


@router.get('/active')
def api_active_class_session(
    enrollment_id: int | None = Query(default=None),
    meeting_url: str | None = Query(default=None),
    student_email: str | None = Query(default=None),
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    row = class_session_service.find_active_class_session(
        db,
        teacher_id=int(user['user_id']),
        enrollment_id=enrollment_id,
        meeting_url=meeting_url,
        student_email=student_email,
    )
    return {'class_session': class_session_service.serialize_class_session(row) if row else None}


@router.get('')
def api_list_class_sessions(
    day: date | None = Query(default=None, alias='date'),
    teacher_id: int | None = Query(default=None),
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    target_day = day or default_time_provider.today()
    rows = class_session_service.list_class_sessions(
        db,
        teacher_id=_acting_teacher_id(user, teacher_id),
        day=target_day,
    )
    return {
        'date': target_day.isoformat(),
        'class_sessions': [class_session_service.serialize_class_session(row) for row in rows],
    }


@router.get('/{session_id:int}')
def api_get_class_session(
    session_id: int,
    user: dict = Depends(_require_teacher_or_admin),
    db: Session = Depends(get_db),
):
    row = class_session_service.get_class_session(db, session_id)
    if row is None or (not is_admin(user) and int(row.teacher_id) != int(user['user_id'])):
        raise HTTPException(status_code=404, detail='Class session not found')
    return {'class_session': class_session_service.serialize_class_session(row)}
