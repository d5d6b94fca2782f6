from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from tutorhub.core.router_guard import http_error, require_auth_user, require_role
from tutorhub.db import get_db
from tutorhub.errors import TutorhubError
from tutorhub.models import Role
from tutorhub.route_logging import EndpointNameRoute
from tutorhub.schemas import CreditDeductRequest, CreditPurchaseRequest
from tutorhub.services import credit_ledger_service


router = APIRouter(prefix='/api/credits', tags=['Credits'], route_class=EndpointNameRoute)


def _accounts_for(db: Session, user: dict, student_id: int | None) -> list:
    role = user['role']
    user_id = int(user['user_id'])
    if role == Role.TEACHER.value:
        return credit_ledger_service.list_credit_accounts(db, teacher_id=user_id, student_id=student_id)
    if role == Role.STUDENT.value:
        return credit_ledger_service.list_credit_accounts(db, student_id=user_id)
    if role == Role.PARENT.value:
        return credit_ledger_service.list_credit_accounts(db, parent_id=user_id, student_id=student_id)
    return credit_ledger_service.list_credit_accounts(db, student_id=student_id)


@router.get('')
def api_list_credit_accounts(
    request: Request,
    student_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    accounts = _accounts_for(db, user, student_id)
    return {'accounts': [credit_ledger_service.serialize_account(row) for row in accounts]}


@router.get('/transactions')
def api_list_credit_transactions(
    request: Request,
    student_id: int | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    accounts = _accounts_for(db, user, student_id)
    rows = credit_ledger_service.list_transactions(db, [row.id for row in accounts], limit=limit)
    return {'transactions': [credit_ledger_service.serialize_transaction(row) for row in rows]}


@router.post('/purchase')
def api_purchase_credits(
    payload: CreditPurchaseRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    require_role(user, {Role.TEACHER.value})
    try:
        return credit_ledger_service.purchase_credits(
            db,
            teacher_id=int(user['user_id']),
            student_id=payload.student_id,
            hours=payload.hours,
            description=payload.description,
            reference_id=payload.reference_id,
            performed_by=int(user['user_id']),
            rate_per_hour=payload.rate_per_hour,
            parent_id=payload.parent_id,
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc


@router.post('/deduct')
def api_deduct_credits(
    payload: CreditDeductRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    user = require_auth_user(request)
    require_role(user, {Role.TEACHER.value})
    try:
        return credit_ledger_service.deduct_credits(
            db,
            teacher_id=int(user['user_id']),
            student_id=payload.student_id,
            hours=payload.hours,
            description=payload.description,
            performed_by=int(user['user_id']),
        )
    except TutorhubError as exc:
        raise http_error(exc) from exc
