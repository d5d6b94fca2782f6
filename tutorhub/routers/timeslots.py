from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from tutorhub.core.router_guard import http_error, require_auth_user, require_role
from tutorhub.db import get_db
from tutorhub.errors import TutorhubError
from tutorhub.models import Role
from tutorhub.route_logging import EndpointNameRoute
from tutorhub.schemas import (
    BlockedSlotRequest,
    ConflictCheckRequest,
    ConflictResolutionRequest,
    RecurringCreateRequest,
    RecurringModifyRequest,
    SlotCandidate,
)
from tutorhub.services import recurring_slot_service, slot_conflict_service
from tutorhub.services.recurring_slot_service import RecurringSlotSpec
from tutorhub.services.slot_conflict_service import AdjustmentPreferences, SlotRequest


router = APIRouter(prefix='/api/timeslots', tags=['Time Slots'], route_class=EndpointNameRoute)


def _require_teacher(request: Request) -> dict:
    user = require_auth_user(request)
    require_role(user, {Role.TEACHER.value})
    return user


def _slot_request(candidate: SlotCandidate) -> SlotRequest:
    return SlotRequest(
        day_of_week=candidate.day_of_week,
        start_time=candidate.start_time,
        end_time=candidate.end_time,
        slot_date=candidate.slot_date,
    )


@router.post('/conflicts')
def api_check_conflicts(
    payload: ConflictCheckRequest,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    date_range = None
    if payload.date_range is not None:
        date_range = (payload.date_range.start_date, payload.date_range.end_date)
    try:
        conflicts = slot_conflict_service.check_conflicts(
            db,
            teacher_id=int(user['user_id']),
            slots=[_slot_request(row) for row in payload.slots],
            check_time_slots=payload.check_time_slots,
            check_schedule_slots=payload.check_schedule_slots,
            date_range=date_range,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return {
        'has_conflicts': bool(conflicts),
        'conflicts': conflicts,
        'total_conflicts': len(conflicts),
    }


@router.put('/conflicts')
def api_resolve_conflicts(
    payload: ConflictResolutionRequest,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    preferences = None
    if payload.adjustment_preferences is not None:
        preferences = AdjustmentPreferences(**payload.adjustment_preferences.model_dump())
    try:
        return slot_conflict_service.resolve_conflicts(
            db,
            teacher_id=int(user['user_id']),
            proposed_slots=[_slot_request(row) for row in payload.proposed_slots],
            strategy=payload.resolution_strategy,
            preferences=preferences,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.post('/recurring')
def api_create_recurring_slots(
    payload: RecurringCreateRequest,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    specs = [RecurringSlotSpec(**row.model_dump()) for row in payload.slots]
    try:
        return recurring_slot_service.create_recurring_slots(
            db,
            teacher_id=int(user['user_id']),
            slots=specs,
            weeks=payload.weeks,
            start_date=payload.start_date,
            create_time_slots=payload.create_time_slots,
            create_schedule_slots=payload.create_schedule_slots,
            preview_only=payload.preview_only,
            exception_dates=payload.exception_dates,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.put('/recurring')
def api_modify_recurring_series(
    payload: RecurringModifyRequest,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    updates = payload.updates.model_dump(exclude_none=True) if payload.updates else {}
    try:
        return recurring_slot_service.modify_series(
            db,
            teacher_id=int(user['user_id']),
            template_id=payload.template_id,
            action=payload.action,
            updates=updates,
            apply_from_date=payload.apply_from_date,
            include_booked=payload.include_booked,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.post('/blocked')
def api_create_blocked_slot(
    payload: BlockedSlotRequest,
    user: dict = Depends(_require_teacher),
    db: Session = Depends(get_db),
):
    try:
        row = slot_conflict_service.create_blocked_slot(
            db,
            teacher_id=int(user['user_id']),
            start_time_value=payload.start_time,
            end_time_value=payload.end_time,
            day_of_week=payload.day_of_week,
            block_date=payload.block_date,
            reason=payload.reason,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
    return {'blocked_slot': slot_conflict_service.serialize_blocked_slot(row)}
