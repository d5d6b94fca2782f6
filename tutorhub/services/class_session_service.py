from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.core.time_provider import TimeProvider, default_time_provider, to_local_naive
from tutorhub.core.time_range import duration_minutes as compute_duration_minutes
from tutorhub.core.time_range import parse_hhmm, parse_time_string, to_minutes, weekday_index
from tutorhub.errors import ConflictError, DependencyError, NotFoundError, TutorhubError, ValidationError
from tutorhub.metrics import timed_service
from tutorhub.models import ClassSession, ClassSessionStatus, Enrollment, PaymentStatus
from tutorhub.services.meeting_probe import HttpReachabilityProbe, MeetingActivityProbe
from tutorhub.services.settlement_service import apply_settlement


logger = logging.getLogger(__name__)

SOURCE_MANUAL = 'manual'
SOURCE_EXTENSION = 'extension'
SOURCE_AUTO = 'auto'
_TRUSTED_SOURCES = {SOURCE_AUTO, SOURCE_EXTENSION}
_CONTENT_PREFIX = {
    SOURCE_MANUAL: 'Manually started',
    SOURCE_EXTENSION: 'Extension started',
    SOURCE_AUTO: 'Auto-detected',
}


def class_window() -> tuple[time, time]:
    return parse_hhmm(settings.class_window_start), parse_hhmm(settings.class_window_end)


def is_within_class_window(moment: datetime) -> bool:
    window_start, window_end = class_window()
    return window_start <= moment.time() <= window_end


def _schedule_days(schedule: dict | None) -> list[dict]:
    if not isinstance(schedule, dict):
        return []
    days = schedule.get('days')
    if not isinstance(days, list):
        return []
    return [row for row in days if isinstance(row, dict) and row.get('time')]


def matches_tentative_schedule(schedule: dict | None, moment: datetime, tolerance_minutes: int) -> bool:
    """True when no schedule is registered or `moment` is within tolerance of a slot on that weekday."""
    slots = _schedule_days(schedule)
    if not slots:
        return True
    current = to_minutes(moment.time())
    for slot in slots:
        day = slot.get('day')
        if day:
            try:
                if weekday_index(str(day)) != moment.weekday():
                    continue
            except ValueError:
                continue
        slot_minutes = parse_time_string(str(slot.get('time')))
        if slot_minutes is not None and abs(current - slot_minutes) <= tolerance_minutes:
            return True
    return False


def format_duration(minutes: int) -> str:
    hours, remainder = divmod(max(0, int(minutes)), 60)
    if hours > 0:
        return f'{hours}h {remainder}m'
    return f'{remainder}m'


def get_class_session(db: Session, session_id: int) -> ClassSession | None:
    return db.query(ClassSession).filter(ClassSession.id == int(session_id)).first()


def get_in_progress_session(db: Session, *, teacher_id: int, student_id: int, day: date) -> ClassSession | None:
    return (
        db.query(ClassSession)
        .filter(
            ClassSession.teacher_id == int(teacher_id),
            ClassSession.student_id == int(student_id),
            ClassSession.session_date == day,
            ClassSession.status == ClassSessionStatus.IN_PROGRESS.value,
        )
        .order_by(ClassSession.start_time.desc())
        .first()
    )


def resolve_enrollment(
    db: Session,
    *,
    teacher_id: int | None = None,
    enrollment_id: int | None = None,
    meeting_url: str | None = None,
    student_email: str | None = None,
    student_id: int | None = None,
) -> Enrollment | None:
    base = db.query(Enrollment).filter(Enrollment.status == 'active')
    if enrollment_id:
        return base.filter(Enrollment.id == int(enrollment_id)).first()
    if teacher_id:
        base = base.filter(Enrollment.teacher_id == int(teacher_id))
    if student_email:
        row = base.filter(Enrollment.student_email == student_email.strip().lower()).first()
        if row:
            return row
    if student_id:
        row = base.filter(Enrollment.student_id == int(student_id)).first()
        if row:
            return row
    if meeting_url:
        return base.filter(Enrollment.meeting_url == meeting_url).first()
    return None


def validate_class_start(
    enrollment: Enrollment,
    meeting_url: str,
    moment: datetime,
    *,
    probe: MeetingActivityProbe | None = None,
) -> str | None:
    """Returns the rejection reason, or None when a manual start looks legitimate."""
    if enrollment.meeting_url and enrollment.meeting_url != meeting_url:
        return 'Meeting URL does not match the enrolled class URL'
    if not is_within_class_window(moment):
        return f'Classes can only be started between {settings.class_window_start} and {settings.class_window_end}'
    if not matches_tentative_schedule(enrollment.tentative_schedule, moment, settings.manual_schedule_tolerance_minutes):
        return 'Current time does not match any scheduled class slots'

    checker = probe or HttpReachabilityProbe(timeout=settings.manual_probe_timeout_seconds)
    status = checker.check(meeting_url)
    if status.probe_failed:
        # Never block a real class because the probe itself could not run.
        logger.warning('class_start_probe_unavailable enrollment_id=%s error=%s', enrollment.id, status.error)
        return None
    if not status.is_accessible:
        return 'Meeting URL is not accessible or meeting room is not available'
    return None


@timed_service('start_class_session')
def start_class_session(
    db: Session,
    *,
    teacher_id: int,
    meeting_url: str,
    student_email: str | None = None,
    student_id: int | None = None,
    enrollment_id: int | None = None,
    manual_override: bool = False,
    source: str = SOURCE_MANUAL,
    start_time: datetime | None = None,
    probe: MeetingActivityProbe | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> ClassSession:
    if not meeting_url:
        raise ValidationError('Missing required field: meeting_url')
    enrollment = resolve_enrollment(
        db,
        teacher_id=teacher_id,
        enrollment_id=enrollment_id,
        meeting_url=meeting_url if source == SOURCE_EXTENSION else None,
        student_email=student_email,
        student_id=student_id,
    )
    if enrollment is None or int(enrollment.teacher_id) != int(teacher_id):
        raise NotFoundError('No active enrollment found for this teacher-student combination or meeting URL')

    now = time_provider.local_now()
    started_at = to_local_naive(start_time) if start_time else now
    session_date = started_at.date()

    existing = get_in_progress_session(db, teacher_id=teacher_id, student_id=enrollment.student_id, day=session_date)
    if existing:
        raise ConflictError('Class already in progress for this student today', class_session_id=existing.id)

    if not manual_override and source not in _TRUSTED_SOURCES:
        reason = validate_class_start(enrollment, meeting_url, now, probe=probe)
        if reason:
            raise ValidationError(reason, can_override=True, suggestion='Use manual_override to bypass validation')

    row = ClassSession(
        enrollment_id=enrollment.id,
        teacher_id=int(teacher_id),
        student_id=enrollment.student_id,
        student_email=enrollment.student_email,
        session_date=session_date,
        start_time=started_at,
        status=ClassSessionStatus.IN_PROGRESS.value,
        detected_automatically=source == SOURCE_AUTO,
        meeting_url=meeting_url,
        subject=enrollment.subject or 'General',
        content=f"{_CONTENT_PREFIX.get(source, 'Started')} class with {enrollment.student_name or 'student'} - {enrollment.subject or 'General'}",
        topics_covered=[],
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        winner = get_in_progress_session(db, teacher_id=teacher_id, student_id=enrollment.student_id, day=session_date)
        raise ConflictError(
            'Class already in progress for this student today',
            class_session_id=winner.id if winner else None,
        ) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('class_session_start_failed enrollment_id=%s', enrollment.id)
        raise DependencyError('Failed to start class session') from exc

    db.refresh(row)
    logger.info(
        'class_session_started session_id=%s teacher_id=%s student_id=%s source=%s',
        row.id,
        row.teacher_id,
        row.student_id,
        source,
    )
    return row


def _lock_session(db: Session, session_id: int) -> ClassSession | None:
    return (
        db.query(ClassSession)
        .filter(ClassSession.id == int(session_id))
        .with_for_update()
        .first()
    )


def _complete_and_settle(
    db: Session,
    session: ClassSession,
    *,
    end_time: datetime,
    duration_minutes: int,
    content: str,
    topics_covered: list[str] | None = None,
    homework_assigned: str | None = None,
    performed_by: int | None = None,
):
    session.end_time = end_time
    session.duration_minutes = duration_minutes
    session.status = ClassSessionStatus.COMPLETED.value
    session.content = content
    if topics_covered:
        session.topics_covered = list(session.topics_covered or []) + [str(t) for t in topics_covered]
    if homework_assigned:
        session.homework_assigned = homework_assigned
    db.flush()
    result = apply_settlement(db, session, performed_by=performed_by)
    db.commit()
    return result


def credit_message(result: dict[str, Any]) -> str:
    status = result.get('payment_status')
    if status == PaymentStatus.PAID.value:
        return f"{result.get('credits_deducted', 0)} credit hours deducted"
    if status == PaymentStatus.PARTIAL.value:
        return f"{result.get('credits_deducted', 0)} credit hours deducted (partial payment)"
    return 'No credits available - marked as unpaid'


@timed_service('end_class_session')
def end_class_session(
    db: Session,
    session_id: int,
    *,
    teacher_id: int | None = None,
    end_time: datetime | None = None,
    content: str | None = None,
    topics_covered: list[str] | None = None,
    homework_assigned: str | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    try:
        session = _lock_session(db, session_id)
        if session is None or (teacher_id and int(session.teacher_id) != int(teacher_id)):
            raise NotFoundError('Class session not found or unauthorized', class_session_id=session_id)
        if session.status != ClassSessionStatus.IN_PROGRESS.value:
            raise ValidationError(
                f'Class is already {session.status}',
                class_session_id=session.id,
                current_status=session.status,
            )

        ended_at = to_local_naive(end_time) if end_time else time_provider.local_now()
        if ended_at < session.start_time:
            raise ValidationError('end_time must not be before start_time', class_session_id=session.id)
        minutes = compute_duration_minutes(session.start_time, ended_at)
        final_content = content or f'{session.content} - Duration: {format_duration(minutes)}'

        result = _complete_and_settle(
            db,
            session,
            end_time=ended_at,
            duration_minutes=minutes,
            content=final_content,
            topics_covered=topics_covered,
            homework_assigned=homework_assigned,
            performed_by=teacher_id,
        )
    except TutorhubError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('class_session_end_failed session_id=%s', session_id)
        raise DependencyError('Failed to end class session; it is still in progress', class_session_id=session_id) from exc

    db.refresh(session)
    logger.info(
        'class_session_ended session_id=%s duration_minutes=%s payment_status=%s',
        session.id,
        session.duration_minutes,
        result.payment_status,
    )
    payload = {
        'class_session_id': session.id,
        'duration_minutes': session.duration_minutes,
        'duration': format_duration(session.duration_minutes or 0),
        **result.as_dict(),
    }
    payload['credit_message'] = credit_message(payload)
    payload['class_session'] = serialize_class_session(session)
    return payload


def force_complete_class_session(
    db: Session,
    session_id: int,
    *,
    end_time: datetime,
    duration_minutes: int,
    note: str,
):
    """Completes a session left running, unless another path already ended it.

    Returns the settlement result, or None when the session was no longer in progress.
    """
    try:
        session = _lock_session(db, session_id)
        if session is None or session.status != ClassSessionStatus.IN_PROGRESS.value:
            db.rollback()
            return None
        return _complete_and_settle(
            db,
            session,
            end_time=end_time,
            duration_minutes=max(0, int(duration_minutes)),
            content=f'{session.content} {note}'.strip(),
        )
    except TutorhubError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise DependencyError('Failed to force-complete class session', class_session_id=session_id) from exc


def find_active_class_session(
    db: Session,
    *,
    teacher_id: int | None = None,
    enrollment_id: int | None = None,
    meeting_url: str | None = None,
    student_email: str | None = None,
) -> ClassSession | None:
    query = db.query(ClassSession).filter(ClassSession.status == ClassSessionStatus.IN_PROGRESS.value)
    if teacher_id:
        query = query.filter(ClassSession.teacher_id == int(teacher_id))
    if enrollment_id:
        query = query.filter(ClassSession.enrollment_id == int(enrollment_id))
    elif meeting_url:
        query = query.filter(ClassSession.meeting_url == meeting_url)
    elif student_email:
        query = query.filter(ClassSession.student_email == student_email.strip().lower())
    elif not teacher_id:
        return None
    return query.order_by(ClassSession.start_time.desc()).first()


def list_class_sessions(db: Session, *, teacher_id: int, day: date) -> list[ClassSession]:
    return (
        db.query(ClassSession)
        .filter(ClassSession.teacher_id == int(teacher_id), ClassSession.session_date == day)
        .order_by(ClassSession.start_time.desc())
        .all()
    )


def count_sessions_for_day(db: Session, *, teacher_id: int, student_id: int, day: date) -> int:
    return (
        db.query(ClassSession)
        .filter(
            ClassSession.teacher_id == int(teacher_id),
            ClassSession.student_id == int(student_id),
            ClassSession.session_date == day,
        )
        .count()
    )


def list_stale_sessions(db: Session, *, started_before: datetime, auto_only: bool) -> list[ClassSession]:
    query = db.query(ClassSession).filter(
        ClassSession.status == ClassSessionStatus.IN_PROGRESS.value,
        ClassSession.start_time < started_before,
    )
    if auto_only:
        query = query.filter(ClassSession.detected_automatically.is_(True))
    return query.order_by(ClassSession.start_time.asc(), ClassSession.id.asc()).all()


def serialize_class_session(row: ClassSession) -> dict[str, Any]:
    return {
        'id': row.id,
        'enrollment_id': row.enrollment_id,
        'teacher_id': row.teacher_id,
        'student_id': row.student_id,
        'student_email': row.student_email,
        'date': row.session_date.isoformat() if row.session_date else None,
        'start_time': row.start_time.isoformat() if row.start_time else None,
        'end_time': row.end_time.isoformat() if row.end_time else None,
        'duration_minutes': row.duration_minutes,
        'status': row.status,
        'detected_automatically': bool(row.detected_automatically),
        'meeting_url': row.meeting_url,
        'subject': row.subject,
        'content': row.content,
        'topics_covered': list(row.topics_covered or []),
        'homework_assigned': row.homework_assigned,
        'credits_deducted': row.credits_deducted,
        'payment_status': row.payment_status,
        'is_paid': bool(row.is_paid),
    }
