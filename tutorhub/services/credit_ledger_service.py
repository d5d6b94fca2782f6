from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorhub.errors import DependencyError, NotFoundError, ValidationError
from tutorhub.models import CreditAccount, CreditTransaction


logger = logging.getLogger(__name__)

HOURS_PRECISION = 4
TRANSACTION_PURCHASE = 'purchase'
TRANSACTION_DEDUCTION = 'deduction'


def _round_hours(value: float) -> float:
    return round(float(value or 0.0), HOURS_PRECISION)


def get_credit_account(
    db: Session,
    *,
    teacher_id: int,
    student_id: int,
    active_only: bool = True,
    for_update: bool = False,
) -> CreditAccount | None:
    query = db.query(CreditAccount).filter(
        CreditAccount.teacher_id == int(teacher_id),
        CreditAccount.student_id == int(student_id),
    )
    if active_only:
        query = query.filter(CreditAccount.is_active.is_(True))
    if for_update:
        query = query.with_for_update()
    return query.first()


def record_transaction(
    db: Session,
    account: CreditAccount,
    *,
    transaction_type: str,
    hours: float,
    description: str = '',
    reference_type: str | None = None,
    reference_id: str | int | None = None,
    performed_by: int | None = None,
) -> CreditTransaction:
    """Apply a ledger movement to a locked account and append its transaction row.

    Does not commit: callers own the unit of work so the balance update and the
    ledger row always land together.
    """
    amount = _round_hours(hours)
    if amount <= 0:
        raise ValidationError('Hours must be greater than 0', hours=hours)

    balance = _round_hours(account.balance_hours)
    if transaction_type == TRANSACTION_PURCHASE:
        account.balance_hours = _round_hours(balance + amount)
        account.total_purchased = _round_hours((account.total_purchased or 0.0) + amount)
    elif transaction_type == TRANSACTION_DEDUCTION:
        if amount > balance:
            raise ValidationError(
                'Insufficient credit balance',
                current_balance=balance,
                requested=amount,
                credit_account_id=account.id,
            )
        account.balance_hours = max(0.0, _round_hours(balance - amount))
        account.total_used = _round_hours((account.total_used or 0.0) + amount)
    else:
        raise ValidationError(f'Unsupported transaction type: {transaction_type}')

    row = CreditTransaction(
        credit_account_id=account.id,
        transaction_type=transaction_type,
        hours_amount=amount,
        balance_after=account.balance_hours,
        description=description or f'Credit {transaction_type}',
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        performed_by=performed_by,
    )
    db.add(row)
    db.flush()
    return row


def _get_or_create_account_for_purchase(
    db: Session,
    *,
    teacher_id: int,
    student_id: int,
    parent_id: int | None,
    rate_per_hour: float | None,
) -> CreditAccount:
    account = get_credit_account(db, teacher_id=teacher_id, student_id=student_id, active_only=False, for_update=True)
    if account is None:
        account = CreditAccount(
            teacher_id=int(teacher_id),
            student_id=int(student_id),
            parent_id=parent_id,
            balance_hours=0.0,
            total_purchased=0.0,
            total_used=0.0,
            rate_per_hour=rate_per_hour,
            is_active=True,
        )
        db.add(account)
        db.flush()
        logger.info('credit_account_created account_id=%s teacher_id=%s student_id=%s', account.id, teacher_id, student_id)
        return account
    if not account.is_active:
        account.is_active = True
        logger.info('credit_account_reactivated account_id=%s', account.id)
    if rate_per_hour is not None:
        account.rate_per_hour = rate_per_hour
    if parent_id is not None and account.parent_id is None:
        account.parent_id = parent_id
    return account


def purchase_credits(
    db: Session,
    *,
    teacher_id: int,
    student_id: int,
    hours: float,
    description: str = '',
    reference_type: str | None = 'payment',
    reference_id: str | int | None = None,
    performed_by: int | None = None,
    rate_per_hour: float | None = None,
    parent_id: int | None = None,
) -> dict[str, Any]:
    try:
        account = _get_or_create_account_for_purchase(
            db,
            teacher_id=teacher_id,
            student_id=student_id,
            parent_id=parent_id,
            rate_per_hour=rate_per_hour,
        )
        transaction = record_transaction(
            db,
            account,
            transaction_type=TRANSACTION_PURCHASE,
            hours=hours,
            description=description or 'Credit purchase',
            reference_type=reference_type,
            reference_id=reference_id,
            performed_by=performed_by,
        )
        db.commit()
    except ValidationError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('credit_purchase_failed teacher_id=%s student_id=%s', teacher_id, student_id)
        raise DependencyError('Failed to process credit purchase') from exc

    db.refresh(account)
    logger.info(
        'credit_purchase account_id=%s hours=%.4f balance_after=%.4f',
        account.id,
        transaction.hours_amount,
        transaction.balance_after,
    )
    return {
        'account': serialize_account(account),
        'transaction': serialize_transaction(transaction),
    }


def deduct_credits(
    db: Session,
    *,
    teacher_id: int,
    student_id: int,
    hours: float,
    description: str = '',
    reference_type: str | None = 'manual',
    reference_id: str | int | None = None,
    performed_by: int | None = None,
) -> dict[str, Any]:
    try:
        account = get_credit_account(db, teacher_id=teacher_id, student_id=student_id, for_update=True)
        if account is None:
            raise NotFoundError('Credit account not found for student', student_id=student_id, teacher_id=teacher_id)
        transaction = record_transaction(
            db,
            account,
            transaction_type=TRANSACTION_DEDUCTION,
            hours=hours,
            description=description or 'Manual credit deduction',
            reference_type=reference_type,
            reference_id=reference_id,
            performed_by=performed_by,
        )
        db.commit()
    except (ValidationError, NotFoundError):
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('credit_deduction_failed teacher_id=%s student_id=%s', teacher_id, student_id)
        raise DependencyError('Failed to process credit deduction') from exc

    db.refresh(account)
    return {
        'account': serialize_account(account),
        'transaction': serialize_transaction(transaction),
    }


def list_credit_accounts(
    db: Session,
    *,
    teacher_id: int | None = None,
    student_id: int | None = None,
    student_ids: list[int] | None = None,
    parent_id: int | None = None,
) -> list[CreditAccount]:
    query = db.query(CreditAccount).filter(CreditAccount.is_active.is_(True))
    if teacher_id is not None:
        query = query.filter(CreditAccount.teacher_id == int(teacher_id))
    if student_id is not None:
        query = query.filter(CreditAccount.student_id == int(student_id))
    if student_ids is not None:
        query = query.filter(CreditAccount.student_id.in_(student_ids))
    if parent_id is not None:
        query = query.filter(CreditAccount.parent_id == int(parent_id))
    return query.order_by(CreditAccount.id.asc()).all()


def list_transactions(db: Session, account_ids: list[int], *, limit: int = 50) -> list[CreditTransaction]:
    if not account_ids:
        return []
    return (
        db.query(CreditTransaction)
        .filter(CreditTransaction.credit_account_id.in_(account_ids))
        .order_by(CreditTransaction.id.desc())
        .limit(limit)
        .all()
    )


def serialize_account(account: CreditAccount) -> dict[str, Any]:
    return {
        'id': account.id,
        'teacher_id': account.teacher_id,
        'student_id': account.student_id,
        'parent_id': account.parent_id,
        'balance_hours': account.balance_hours,
        'total_purchased': account.total_purchased,
        'total_used': account.total_used,
        'rate_per_hour': account.rate_per_hour,
        'is_active': account.is_active,
    }


def serialize_transaction(row: CreditTransaction) -> dict[str, Any]:
    return {
        'id': row.id,
        'credit_account_id': row.credit_account_id,
        'transaction_type': row.transaction_type,
        'hours_amount': row.hours_amount,
        'balance_after': row.balance_after,
        'description': row.description,
        'reference_type': row.reference_type,
        'reference_id': row.reference_id,
        'performed_by': row.performed_by,
        'created_at': row.created_at.isoformat() if row.created_at else None,
    }
