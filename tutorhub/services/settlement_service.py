from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorhub.core.time_range import duration_minutes as compute_duration_minutes
from tutorhub.errors import DependencyError, NotFoundError, TutorhubError, ValidationError
from tutorhub.models import ClassSession, ClassSessionStatus, PaymentStatus
from tutorhub.services.credit_ledger_service import HOURS_PRECISION, TRANSACTION_DEDUCTION, get_credit_account, record_transaction


logger = logging.getLogger(__name__)

SETTLEMENT_EPSILON_HOURS = 1e-6


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    credits_deducted: float
    payment_status: str
    is_paid: bool
    already_processed: bool

    def as_dict(self) -> dict:
        return asdict(self)


def derive_payment_status(deductible_hours: float, required_hours: float) -> str:
    if required_hours <= SETTLEMENT_EPSILON_HOURS:
        return PaymentStatus.PAID.value
    if deductible_hours <= SETTLEMENT_EPSILON_HOURS:
        return PaymentStatus.UNPAID.value
    if deductible_hours < required_hours - SETTLEMENT_EPSILON_HOURS:
        return PaymentStatus.PARTIAL.value
    return PaymentStatus.PAID.value


def _stored_result(session: ClassSession) -> SettlementResult:
    return SettlementResult(
        success=True,
        credits_deducted=float(session.credits_deducted or 0.0),
        payment_status=session.payment_status or PaymentStatus.UNPAID.value,
        is_paid=bool(session.is_paid),
        already_processed=True,
    )


def _resolve_duration_minutes(session: ClassSession) -> int:
    if session.duration_minutes is not None:
        return max(0, int(session.duration_minutes))
    if session.start_time and session.end_time:
        return max(0, compute_duration_minutes(session.start_time, session.end_time))
    raise ValidationError('Class session duration is unknown', class_session_id=session.id)


def apply_settlement(db: Session, session: ClassSession, *, performed_by: int | None = None) -> SettlementResult:
    """Settle a completed session inside the caller's unit of work.

    The session row must already be locked by the caller. Nothing is committed
    here; a replay on an already settled session performs no writes.
    """
    if session.credits_deducted is not None:
        return _stored_result(session)
    if session.status != ClassSessionStatus.COMPLETED.value:
        raise ValidationError(
            f'Class session is {session.status}, settlement requires completed',
            class_session_id=session.id,
            current_status=session.status,
        )

    minutes = _resolve_duration_minutes(session)
    required_hours = round(minutes / 60.0, HOURS_PRECISION)
    deductible = 0.0

    account = get_credit_account(db, teacher_id=session.teacher_id, student_id=session.student_id, for_update=True)
    if account is not None and required_hours > 0:
        deductible = round(min(float(account.balance_hours or 0.0), required_hours), HOURS_PRECISION)
        if deductible > 0:
            record_transaction(
                db,
                account,
                transaction_type=TRANSACTION_DEDUCTION,
                hours=deductible,
                description=f'Class session {session.id} ({minutes} min)',
                reference_type='class_session',
                reference_id=session.id,
                performed_by=performed_by,
            )

    payment_status = derive_payment_status(deductible, required_hours)
    session.duration_minutes = minutes
    session.credits_deducted = deductible
    session.payment_status = payment_status
    session.is_paid = payment_status == PaymentStatus.PAID.value
    db.flush()

    logger.info(
        'class_session_settled session_id=%s required_hours=%.4f deducted=%.4f payment_status=%s',
        session.id,
        required_hours,
        deductible,
        payment_status,
    )
    return SettlementResult(
        success=True,
        credits_deducted=deductible,
        payment_status=payment_status,
        is_paid=session.is_paid,
        already_processed=False,
    )


def settle_class_session(db: Session, session_id: int, *, performed_by: int | None = None) -> SettlementResult:
    try:
        session = (
            db.query(ClassSession)
            .filter(ClassSession.id == int(session_id))
            .with_for_update()
            .first()
        )
        if session is None:
            raise NotFoundError('Class session not found', class_session_id=session_id)
        result = apply_settlement(db, session, performed_by=performed_by)
        if result.already_processed:
            db.rollback()
        else:
            db.commit()
        return result
    except TutorhubError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('settlement_failed session_id=%s', session_id)
        raise DependencyError('Settlement failed, no changes were applied', class_session_id=session_id) from exc
