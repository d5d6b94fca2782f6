from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.core.time_provider import TimeProvider, default_time_provider
from tutorhub.core.time_range import duration_minutes as compute_duration_minutes
from tutorhub.models import Enrollment
from tutorhub.services import class_session_service
from tutorhub.services.meeting_probe import CONFIDENCE_LOW, MeetingActivityProbe, MeetingStatus, default_meeting_probe


logger = logging.getLogger(__name__)

AUTO_END_TAG = '[Auto-ended: exceeded 3 hours]'
EMERGENCY_END_TAG = '[Emergency auto-end]'


def _active_enrollments_with_meeting(db: Session) -> list[Enrollment]:
    return (
        db.query(Enrollment)
        .filter(
            Enrollment.status == 'active',
            Enrollment.meeting_url.isnot(None),
            Enrollment.meeting_url != '',
        )
        .order_by(Enrollment.id.asc())
        .all()
    )


def group_by_meeting_url(enrollments: list[Enrollment]) -> dict[str, list[Enrollment]]:
    groups: dict[str, list[Enrollment]] = {}
    for enrollment in enrollments:
        groups.setdefault(enrollment.meeting_url.strip(), []).append(enrollment)
    return groups


def daily_session_cap(enrollment: Enrollment) -> int:
    return max(2, int(enrollment.classes_per_week or 0))


def should_process(db: Session, enrollment: Enrollment, status: MeetingStatus, now: datetime) -> tuple[bool, str]:
    """Gate for auto-starting a session; returns (allowed, reason)."""
    if not class_session_service.is_within_class_window(now):
        return False, 'outside hours'
    logged_today = class_session_service.count_sessions_for_day(
        db,
        teacher_id=enrollment.teacher_id,
        student_id=enrollment.student_id,
        day=now.date(),
    )
    if logged_today >= daily_session_cap(enrollment):
        return False, 'daily session limit reached'
    if not class_session_service.matches_tentative_schedule(
        enrollment.tentative_schedule,
        now,
        settings.auto_schedule_tolerance_minutes,
    ):
        return False, 'not near scheduled time'
    if status.confidence == CONFIDENCE_LOW:
        return False, 'low confidence'
    return True, 'ok'


def _probe(probe: MeetingActivityProbe, meeting_url: str) -> MeetingStatus:
    try:
        return probe.check(meeting_url)
    except Exception as exc:
        # A misbehaving probe must not take the batch down.
        logger.warning('auto_detection_probe_error url=%s error=%s', meeting_url, exc)
        return MeetingStatus(is_accessible=False, has_active_participants=False, confidence=CONFIDENCE_LOW, error=str(exc))


def _process_enrollment(
    db: Session,
    enrollment: Enrollment,
    status: MeetingStatus,
    now: datetime,
    time_provider: TimeProvider,
) -> tuple[str, str]:
    active = class_session_service.get_in_progress_session(
        db,
        teacher_id=enrollment.teacher_id,
        student_id=enrollment.student_id,
        day=now.date(),
    )

    if status.is_accessible:
        if active is not None:
            return 'skipped', 'already has active log'
        allowed, reason = should_process(db, enrollment, status, now)
        if not allowed:
            return 'skipped', reason
        row = class_session_service.start_class_session(
            db,
            teacher_id=enrollment.teacher_id,
            enrollment_id=enrollment.id,
            meeting_url=enrollment.meeting_url,
            source=class_session_service.SOURCE_AUTO,
            start_time=now,
            time_provider=time_provider,
        )
        logger.info('auto_detection_started enrollment_id=%s session_id=%s', enrollment.id, row.id)
        return 'started', 'meeting active'

    if active is not None and status.confidence != CONFIDENCE_LOW:
        result = class_session_service.end_class_session(
            db,
            active.id,
            end_time=now,
            time_provider=time_provider,
        )
        logger.info(
            'auto_detection_ended enrollment_id=%s session_id=%s payment_status=%s',
            enrollment.id,
            active.id,
            result['payment_status'],
        )
        return 'ended', 'meeting inactive'
    if status.confidence == CONFIDENCE_LOW:
        return 'skipped', 'low confidence'
    return 'skipped', 'meeting inactive'


def cleanup_stale_sessions(
    db: Session,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Force-complete sessions left running.

    Any session older than the emergency threshold is closed with a capped
    duration; auto-detected sessions past the stale threshold are closed with
    their real elapsed duration. Both paths settle credits.
    """
    now = time_provider.local_now()
    counters = {'emergency_ended': 0, 'auto_ended': 0, 'cleanup_errors': 0}

    emergency_rows = class_session_service.list_stale_sessions(
        db,
        started_before=now - timedelta(hours=settings.emergency_session_hours),
        auto_only=False,
    )
    for row in emergency_rows:
        session_id = row.id
        minutes = min(compute_duration_minutes(row.start_time, now), settings.emergency_duration_cap_minutes)
        try:
            result = class_session_service.force_complete_class_session(
                db,
                session_id,
                end_time=now,
                duration_minutes=minutes,
                note=EMERGENCY_END_TAG,
            )
        except Exception:
            db.rollback()
            counters['cleanup_errors'] += 1
            logger.exception('stale_session_cleanup_failed session_id=%s sweep=emergency', session_id)
            continue
        if result is not None:
            counters['emergency_ended'] += 1
            logger.warning('stale_session_emergency_ended session_id=%s duration_minutes=%s', session_id, minutes)

    auto_rows = class_session_service.list_stale_sessions(
        db,
        started_before=now - timedelta(hours=settings.stale_auto_session_hours),
        auto_only=True,
    )
    for row in auto_rows:
        session_id = row.id
        minutes = compute_duration_minutes(row.start_time, now)
        try:
            result = class_session_service.force_complete_class_session(
                db,
                session_id,
                end_time=now,
                duration_minutes=minutes,
                note=AUTO_END_TAG,
            )
        except Exception:
            db.rollback()
            counters['cleanup_errors'] += 1
            logger.exception('stale_session_cleanup_failed session_id=%s sweep=auto', session_id)
            continue
        if result is not None:
            counters['auto_ended'] += 1
            logger.info('stale_session_auto_ended session_id=%s duration_minutes=%s', session_id, minutes)

    return counters


def run_auto_detection(
    db: Session,
    *,
    probe: MeetingActivityProbe | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    checker = probe or default_meeting_probe
    now = time_provider.local_now()
    groups = group_by_meeting_url(_active_enrollments_with_meeting(db))

    counts = {'checked': 0, 'started': 0, 'ended': 0, 'skipped': 0, 'errors': 0}
    skip_reasons: Counter[str] = Counter()

    for meeting_url, enrollments in groups.items():
        status = _probe(checker, meeting_url)
        for enrollment in enrollments:
            counts['checked'] += 1
            enrollment_id = enrollment.id
            try:
                outcome, reason = _process_enrollment(db, enrollment, status, now, time_provider)
            except Exception:
                db.rollback()
                counts['errors'] += 1
                logger.exception('auto_detection_enrollment_failed enrollment_id=%s', enrollment_id)
                continue
            counts[outcome] += 1
            if outcome == 'skipped':
                skip_reasons[reason] += 1
                logger.debug('auto_detection_skipped enrollment_id=%s reason=%s', enrollment_id, reason)

    cleanup = cleanup_stale_sessions(db, time_provider=time_provider)

    checked = counts['checked']
    summary = {
        **counts,
        'urls_probed': len(groups),
        'efficiency': round((counts['started'] + counts['ended']) / checked, 4) if checked else 0.0,
        'error_rate': round(counts['errors'] / checked, 4) if checked else 0.0,
        'skip_reasons': dict(skip_reasons),
        'cleanup': cleanup,
        'ran_at': now.isoformat(),
    }
    logger.info(
        'auto_detection_complete checked=%s started=%s ended=%s skipped=%s errors=%s',
        counts['checked'],
        counts['started'],
        counts['ended'],
        counts['skipped'],
        counts['errors'],
        extra={'summary': summary},
    )
    return summary
