from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorhub.core.time_provider import TimeProvider, default_time_provider
from tutorhub.core.time_range import WEEKDAY_NAMES, to_minutes, weekday_index, weekday_name
from tutorhub.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from tutorhub.models import ScheduleSlot, SlotStatus, TimeSlotTemplate, WaitlistEntry
from tutorhub.services.slot_conflict_service import SlotRequest, check_conflicts, serialize_schedule_slot, serialize_template


logger = logging.getLogger(__name__)

MIN_WEEKS = 1
MAX_WEEKS = 52
MAX_SLOTS_PER_REQUEST = 20
MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480
RECURRENCE_WEEKLY = 'weekly'

ACTION_UPDATE_SERIES = 'update_series'
ACTION_DELETE_SERIES = 'delete_series'
SINGLE_ACTIONS = {
    'update_single': 'Single slot updates should use the individual slot endpoint',
    'delete_single': 'Single slot deletions should use the individual slot endpoint',
}
_SERIES_UPDATE_FIELDS = ('day_of_week', 'start_time', 'end_time', 'subject', 'duration_minutes', 'is_available')


@dataclass(frozen=True)
class RecurringSlotSpec:
    day_of_week: str
    start_time: time
    end_time: time
    subject: str | None = None
    duration_minutes: int | None = None

    @property
    def key(self) -> str:
        return f'{self.day_of_week}-{self.start_time:%H:%M}-{self.end_time:%H:%M}'

    @property
    def resolved_duration(self) -> int:
        if self.duration_minutes:
            return int(self.duration_minutes)
        return to_minutes(self.end_time) - to_minutes(self.start_time)


def _canonical_day(value: str) -> str:
    try:
        return WEEKDAY_NAMES[weekday_index(value)]
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def _validate_spec(spec: RecurringSlotSpec) -> RecurringSlotSpec:
    day = _canonical_day(spec.day_of_week)
    if spec.start_time >= spec.end_time:
        raise ValidationError(f'Invalid time range for {day}: start time must be before end time', day_of_week=day)
    duration = spec.resolved_duration
    if not MIN_DURATION_MINUTES <= duration <= MAX_DURATION_MINUTES:
        raise ValidationError(
            f'duration_minutes must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}',
            day_of_week=day,
        )
    return RecurringSlotSpec(
        day_of_week=day,
        start_time=spec.start_time,
        end_time=spec.end_time,
        subject=spec.subject,
        duration_minutes=duration,
    )


def generate_dates(day_of_week: str, start_date: date, weeks: int, exceptions: Iterable[date] = ()) -> list[date]:
    """One date per week starting at the first `day_of_week` on or after `start_date`."""
    target = weekday_index(day_of_week)
    skip = set(exceptions)
    first = start_date + timedelta(days=(target - start_date.weekday()) % 7)
    dates: list[date] = []
    for week in range(int(weeks)):
        current = first + timedelta(days=7 * week)
        if current not in skip:
            dates.append(current)
    return dates


def _collect_conflicts(
    db: Session,
    *,
    teacher_id: int,
    specs: list[RecurringSlotSpec],
    dates_by_key: dict[str, list[date]],
    time_provider: TimeProvider,
) -> list[dict[str, Any]]:
    candidates: list[SlotRequest] = []
    for spec in specs:
        dates = dates_by_key[spec.key]
        if not dates:
            candidates.append(SlotRequest(spec.day_of_week, spec.start_time, spec.end_time))
            continue
        candidates.extend(SlotRequest(spec.day_of_week, spec.start_time, spec.end_time, slot_date=day) for day in dates)
    return check_conflicts(db, teacher_id=teacher_id, slots=candidates, time_provider=time_provider)


def create_recurring_slots(
    db: Session,
    *,
    teacher_id: int,
    slots: list[RecurringSlotSpec],
    weeks: int = 4,
    start_date: date | None = None,
    create_time_slots: bool = True,
    create_schedule_slots: bool = True,
    preview_only: bool = False,
    exception_dates: Iterable[date] = (),
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    if not slots:
        raise ValidationError('At least one slot is required')
    if len(slots) > MAX_SLOTS_PER_REQUEST:
        raise ValidationError(f'At most {MAX_SLOTS_PER_REQUEST} slots per request')
    if not MIN_WEEKS <= int(weeks) <= MAX_WEEKS:
        raise ValidationError(f'weeks must be between {MIN_WEEKS} and {MAX_WEEKS}')

    specs = [_validate_spec(spec) for spec in slots]
    first_day = start_date or (time_provider.today() + timedelta(days=1))
    exceptions = list(exception_dates)
    dates_by_key = {spec.key: generate_dates(spec.day_of_week, first_day, weeks, exceptions) for spec in specs}
    total_schedule_slots = sum(len(dates_by_key[spec.key]) for spec in specs)

    conflicts = _collect_conflicts(
        db,
        teacher_id=teacher_id,
        specs=specs,
        dates_by_key=dates_by_key,
        time_provider=time_provider,
    )

    if preview_only:
        return {
            'preview': {
                'slots_to_create': len(specs),
                'weeks': int(weeks),
                'start_date': first_day.isoformat(),
                'total_schedule_slots': total_schedule_slots,
                'slot_details': [
                    {
                        'day_of_week': spec.day_of_week,
                        'start_time': f'{spec.start_time:%H:%M}',
                        'end_time': f'{spec.end_time:%H:%M}',
                        'subject': spec.subject,
                        'duration_minutes': spec.duration_minutes,
                        'dates': [day.isoformat() for day in dates_by_key[spec.key]],
                    }
                    for spec in specs
                ],
            },
            'conflicts': conflicts,
            'has_conflicts': bool(conflicts),
        }

    if conflicts:
        raise ConflictError('Conflicts detected with existing slots', code='RECURRING_CONFLICTS', conflicts=conflicts)

    recurrence_end = first_day + timedelta(weeks=int(weeks))
    results: dict[str, Any] = {
        'time_slots_created': 0,
        'schedule_slots_created': 0,
        'time_slots': [],
        'schedule_slots': [],
        'errors': [],
    }
    template_ids: dict[str, int] = {}

    if create_time_slots:
        for spec in specs:
            row = TimeSlotTemplate(
                teacher_id=int(teacher_id),
                day_of_week=spec.day_of_week,
                start_time=spec.start_time,
                end_time=spec.end_time,
                subject=spec.subject,
                duration_minutes=spec.duration_minutes,
                is_available=True,
                is_recurring=True,
                recurrence_end_date=recurrence_end,
            )
            db.add(row)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception('recurring_template_create_failed teacher_id=%s day=%s', teacher_id, spec.day_of_week)
                results['errors'].append(f'Failed to create time slot for {spec.day_of_week}: {exc.__class__.__name__}')
                continue
            db.refresh(row)
            template_ids[spec.key] = row.id
            results['time_slots'].append(serialize_template(row))
            results['time_slots_created'] += 1

    if create_schedule_slots:
        for spec in specs:
            for day in dates_by_key[spec.key]:
                row = ScheduleSlot(
                    teacher_id=int(teacher_id),
                    slot_date=day,
                    start_time=spec.start_time,
                    end_time=spec.end_time,
                    duration_minutes=spec.duration_minutes,
                    subject=spec.subject,
                    status=SlotStatus.AVAILABLE.value,
                    is_recurring=True,
                    recurrence_type=RECURRENCE_WEEKLY,
                    template_id=template_ids.get(spec.key),
                )
                db.add(row)
                try:
                    db.commit()
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.exception('recurring_slot_create_failed teacher_id=%s date=%s', teacher_id, day)
                    results['errors'].append(
                        f'Failed to create schedule slot for {spec.day_of_week} {day.isoformat()}: {exc.__class__.__name__}'
                    )
                    continue
                db.refresh(row)
                results['schedule_slots'].append(serialize_schedule_slot(row))
                results['schedule_slots_created'] += 1

    logger.info(
        'recurring_slots_created teacher_id=%s templates=%s schedule_slots=%s errors=%s',
        teacher_id,
        results['time_slots_created'],
        results['schedule_slots_created'],
        len(results['errors']),
    )
    return {
        'message': f"Created {results['time_slots_created']} time slots and {results['schedule_slots_created']} schedule slots",
        'results': results,
    }


def _series_slots(
    db: Session,
    *,
    teacher_id: int,
    template: TimeSlotTemplate,
    from_date: date,
    statuses: tuple[str, ...],
) -> list[ScheduleSlot]:
    rows = (
        db.query(ScheduleSlot)
        .filter(
            ScheduleSlot.teacher_id == int(teacher_id),
            ScheduleSlot.start_time == template.start_time,
            ScheduleSlot.end_time == template.end_time,
            ScheduleSlot.is_recurring.is_(True),
            ScheduleSlot.slot_date >= from_date,
            ScheduleSlot.status.in_(statuses),
        )
        .order_by(ScheduleSlot.slot_date.asc(), ScheduleSlot.id.asc())
        .all()
    )
    return [
        row
        for row in rows
        if row.template_id == template.id
        or (row.template_id is None and weekday_name(row.slot_date) == template.day_of_week)
    ]


def _normalize_updates(template: TimeSlotTemplate, updates: dict[str, Any]) -> dict[str, Any]:
    unknown = set(updates) - set(_SERIES_UPDATE_FIELDS)
    if unknown:
        raise ValidationError(f"Unsupported update fields: {', '.join(sorted(unknown))}")
    cleaned = {key: value for key, value in updates.items() if value is not None}
    if 'day_of_week' in cleaned:
        cleaned['day_of_week'] = _canonical_day(cleaned['day_of_week'])
    start = cleaned.get('start_time', template.start_time)
    end = cleaned.get('end_time', template.end_time)
    if start >= end:
        raise ValidationError('start time must be before end time')
    if 'duration_minutes' in cleaned and not MIN_DURATION_MINUTES <= int(cleaned['duration_minutes']) <= MAX_DURATION_MINUTES:
        raise ValidationError(f'duration_minutes must be between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}')
    return cleaned


def modify_series(
    db: Session,
    *,
    teacher_id: int,
    template_id: int,
    action: str,
    updates: dict[str, Any] | None = None,
    apply_from_date: date | None = None,
    include_booked: bool = False,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    if action in SINGLE_ACTIONS:
        raise ValidationError(SINGLE_ACTIONS[action], action=action)
    if action not in (ACTION_UPDATE_SERIES, ACTION_DELETE_SERIES):
        raise ValidationError('Invalid action specified', action=action)

    template = (
        db.query(TimeSlotTemplate)
        .filter(TimeSlotTemplate.id == int(template_id), TimeSlotTemplate.teacher_id == int(teacher_id))
        .first()
    )
    if template is None:
        raise NotFoundError('Time slot not found', template_id=template_id)

    today = time_provider.today()
    from_date = max(today, apply_from_date) if apply_from_date else today
    results = {
        'time_slots_updated': 0,
        'time_slots_deleted': 0,
        'schedule_slots_updated': 0,
        'schedule_slots_deleted': 0,
    }

    try:
        if action == ACTION_UPDATE_SERIES:
            cleaned = _normalize_updates(template, updates or {})
            statuses = (SlotStatus.AVAILABLE.value, SlotStatus.BOOKED.value) if include_booked else (SlotStatus.AVAILABLE.value,)
            # Match on the signature the slots were created with, before the template changes.
            series = _series_slots(db, teacher_id=teacher_id, template=template, from_date=from_date, statuses=statuses)
            for key, value in cleaned.items():
                setattr(template, key, value)
            if cleaned:
                results['time_slots_updated'] = 1
            propagated = {key: cleaned[key] for key in ('start_time', 'end_time', 'subject', 'duration_minutes') if key in cleaned}
            if propagated:
                for row in series:
                    for key, value in propagated.items():
                        setattr(row, key, value)
                results['schedule_slots_updated'] = len(series)
        else:
            series = _series_slots(
                db,
                teacher_id=teacher_id,
                template=template,
                from_date=from_date,
                statuses=(SlotStatus.AVAILABLE.value,),
            )
            for row in series:
                db.delete(row)
            results['schedule_slots_deleted'] = len(series)
            db.query(ScheduleSlot).filter(ScheduleSlot.template_id == template.id).update(
                {ScheduleSlot.template_id: None},
                synchronize_session=False,
            )
            db.query(WaitlistEntry).filter(WaitlistEntry.template_id == template.id).update(
                {WaitlistEntry.template_id: None},
                synchronize_session=False,
            )
            db.delete(template)
            results['time_slots_deleted'] = 1
        db.commit()
    except ValidationError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('recurring_series_modify_failed template_id=%s action=%s', template_id, action)
        raise DependencyError('Failed to modify recurring series', template_id=template_id) from exc

    logger.info('recurring_series_modified template_id=%s action=%s results=%s', template_id, action, results)
    return {'message': f'Recurring series {action} completed', 'results': results}
