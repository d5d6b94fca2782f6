from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, time, timedelta
from typing import Any, Iterable

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tutorhub.core.time_provider import TimeProvider, default_time_provider
from tutorhub.core.time_range import WEEKDAY_NAMES, add_minutes, overlaps, to_minutes, weekday_index, weekday_name
from tutorhub.errors import ValidationError
from tutorhub.models import BlockedSlot, ScheduleSlot, SlotStatus, TimeSlotTemplate


logger = logging.getLogger(__name__)

ADJUSTMENT_STEP_MINUTES = 15
MIN_ADJUSTMENT_MINUTES = 15
MAX_ADJUSTMENT_MINUTES = 120
DEFAULT_LOOKAHEAD_DAYS = 28
EARLIEST_START = time(hour=6, minute=0)
LATEST_END_HOUR = 22
DAY_CHANGE_SCORE = 50
MAX_SUGGESTIONS = 5
MAX_ALTERNATIVE_DAYS = 3

STRATEGY_SUGGEST = 'suggest_alternatives'
STRATEGY_AUTO_ADJUST = 'auto_adjust'
STRATEGY_FORCE = 'force_override'
STRATEGIES = (STRATEGY_SUGGEST, STRATEGY_AUTO_ADJUST, STRATEGY_FORCE)
DIRECTIONS = ('earlier', 'later', 'any')
_OCCUPYING_STATUSES = (SlotStatus.AVAILABLE.value, SlotStatus.BOOKED.value)


@dataclass(frozen=True)
class SlotRequest:
    day_of_week: str
    start_time: time
    end_time: time
    slot_date: date | None = None

    def validate(self) -> 'SlotRequest':
        try:
            day = WEEKDAY_NAMES[weekday_index(self.day_of_week)]
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if self.end_time <= self.start_time:
            raise ValidationError('end_time must be after start_time', day_of_week=day)
        return replace(self, day_of_week=day)

    def as_dict(self) -> dict[str, Any]:
        return {
            'day_of_week': self.day_of_week,
            'start_time': _fmt(self.start_time),
            'end_time': _fmt(self.end_time),
            'date': self.slot_date.isoformat() if self.slot_date else None,
        }


@dataclass(frozen=True)
class AdjustmentPreferences:
    preferred_direction: str = 'any'
    max_adjustment_minutes: int = 60
    allow_day_change: bool = False

    def validate(self) -> 'AdjustmentPreferences':
        if self.preferred_direction not in DIRECTIONS:
            raise ValidationError(f'Invalid preferred_direction: {self.preferred_direction}')
        if not MIN_ADJUSTMENT_MINUTES <= int(self.max_adjustment_minutes) <= MAX_ADJUSTMENT_MINUTES:
            raise ValidationError(
                f'max_adjustment_minutes must be between {MIN_ADJUSTMENT_MINUTES} and {MAX_ADJUSTMENT_MINUTES}'
            )
        return self


def _fmt(value: time) -> str:
    return value.strftime('%H:%M')


def serialize_template(row: TimeSlotTemplate) -> dict[str, Any]:
    return {
        'id': row.id,
        'teacher_id': row.teacher_id,
        'day_of_week': row.day_of_week,
        'start_time': _fmt(row.start_time),
        'end_time': _fmt(row.end_time),
        'subject': row.subject,
        'duration_minutes': row.duration_minutes,
        'is_available': bool(row.is_available),
        'is_recurring': bool(row.is_recurring),
        'recurrence_end_date': row.recurrence_end_date.isoformat() if row.recurrence_end_date else None,
    }


def serialize_schedule_slot(row: ScheduleSlot) -> dict[str, Any]:
    return {
        'id': row.id,
        'teacher_id': row.teacher_id,
        'date': row.slot_date.isoformat(),
        'day_of_week': weekday_name(row.slot_date),
        'start_time': _fmt(row.start_time),
        'end_time': _fmt(row.end_time),
        'duration_minutes': row.duration_minutes,
        'subject': row.subject,
        'status': row.status,
        'student_id': row.student_id,
        'is_recurring': bool(row.is_recurring),
        'recurrence_type': row.recurrence_type,
        'template_id': row.template_id,
        'booked_at': row.booked_at.isoformat() if row.booked_at else None,
    }


def serialize_blocked_slot(row: BlockedSlot) -> dict[str, Any]:
    return {
        'id': row.id,
        'teacher_id': row.teacher_id,
        'day_of_week': row.day_of_week,
        'date': row.block_date.isoformat() if row.block_date else None,
        'start_time': _fmt(row.start_time),
        'end_time': _fmt(row.end_time),
        'reason': row.reason or '',
    }


def _templates_for_day(db: Session, *, teacher_id: int, day_of_week: str) -> list[TimeSlotTemplate]:
    return (
        db.query(TimeSlotTemplate)
        .filter(
            TimeSlotTemplate.teacher_id == int(teacher_id),
            TimeSlotTemplate.day_of_week == day_of_week,
            TimeSlotTemplate.is_available.is_(True),
        )
        .order_by(TimeSlotTemplate.start_time.asc(), TimeSlotTemplate.id.asc())
        .all()
    )


def _schedule_slots_between(db: Session, *, teacher_id: int, start: date, end: date) -> list[ScheduleSlot]:
    return (
        db.query(ScheduleSlot)
        .filter(
            ScheduleSlot.teacher_id == int(teacher_id),
            ScheduleSlot.status.in_(_OCCUPYING_STATUSES),
            ScheduleSlot.slot_date >= start,
            ScheduleSlot.slot_date <= end,
        )
        .order_by(ScheduleSlot.slot_date.asc(), ScheduleSlot.start_time.asc(), ScheduleSlot.id.asc())
        .all()
    )


def _blocked_for(db: Session, *, teacher_id: int, day_of_week: str, slot_date: date | None) -> list[BlockedSlot]:
    match = [BlockedSlot.day_of_week == day_of_week]
    if slot_date is not None:
        match.append(BlockedSlot.block_date == slot_date)
    return (
        db.query(BlockedSlot)
        .filter(BlockedSlot.teacher_id == int(teacher_id), or_(*match))
        .order_by(BlockedSlot.start_time.asc(), BlockedSlot.id.asc())
        .all()
    )


def _overlapping(rows: Iterable, start: time, end: time) -> list:
    return [row for row in rows if overlaps(start, end, row.start_time, row.end_time)]


def check_conflicts(
    db: Session,
    *,
    teacher_id: int,
    slots: list[SlotRequest],
    check_time_slots: bool = True,
    check_schedule_slots: bool = True,
    date_range: tuple[date, date] | None = None,
    exclude_schedule_slot_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> list[dict[str, Any]]:
    """Report existing rows overlapping each candidate slot.

    Candidates without any conflict are left out of the result.
    """
    today = time_provider.today()
    results: list[dict[str, Any]] = []
    for slot in slots:
        slot = slot.validate()
        time_slot_conflicts: list[TimeSlotTemplate] = []
        schedule_slot_conflicts: list[ScheduleSlot] = []

        if check_time_slots:
            time_slot_conflicts = _overlapping(
                _templates_for_day(db, teacher_id=teacher_id, day_of_week=slot.day_of_week),
                slot.start_time,
                slot.end_time,
            )

        if check_schedule_slots:
            if slot.slot_date is not None:
                window = (slot.slot_date, slot.slot_date)
            elif date_range is not None:
                window = date_range
            else:
                window = (today, today + timedelta(days=DEFAULT_LOOKAHEAD_DAYS))
            schedule_slot_conflicts = [
                row
                for row in _overlapping(
                    _schedule_slots_between(db, teacher_id=teacher_id, start=window[0], end=window[1]),
                    slot.start_time,
                    slot.end_time,
                )
                if row.id != exclude_schedule_slot_id
            ]

        blocked_conflicts = _overlapping(
            _blocked_for(db, teacher_id=teacher_id, day_of_week=slot.day_of_week, slot_date=slot.slot_date),
            slot.start_time,
            slot.end_time,
        )

        if time_slot_conflicts or schedule_slot_conflicts or blocked_conflicts:
            results.append(
                {
                    'slot': slot.as_dict(),
                    'time_slot_conflicts': [serialize_template(row) for row in time_slot_conflicts],
                    'schedule_slot_conflicts': [serialize_schedule_slot(row) for row in schedule_slot_conflicts],
                    'blocked_slot_conflicts': [serialize_blocked_slot(row) for row in blocked_conflicts],
                }
            )
    return results


def busy_intervals_for(
    db: Session,
    *,
    teacher_id: int,
    day_of_week: str,
    slot_date: date | None = None,
    today: date | None = None,
) -> list[tuple[time, time]]:
    """Every occupied interval a new slot on that day would have to avoid."""
    rows: list[tuple[time, time]] = [
        (row.start_time, row.end_time)
        for row in _templates_for_day(db, teacher_id=teacher_id, day_of_week=day_of_week)
    ]
    if slot_date is not None:
        schedule_rows = _schedule_slots_between(db, teacher_id=teacher_id, start=slot_date, end=slot_date)
    else:
        start = today or default_time_provider.today()
        schedule_rows = [
            row
            for row in _schedule_slots_between(db, teacher_id=teacher_id, start=start, end=start + timedelta(days=DEFAULT_LOOKAHEAD_DAYS))
            if weekday_name(row.slot_date) == day_of_week
        ]
    rows.extend((row.start_time, row.end_time) for row in schedule_rows)
    rows.extend(
        (row.start_time, row.end_time)
        for row in _blocked_for(db, teacher_id=teacher_id, day_of_week=day_of_week, slot_date=slot_date)
    )
    return rows


def calculate_time_score(new_start: time, adjustment_minutes: int, direction: str) -> int:
    score = 100 - adjustment_minutes
    hour = new_start.hour
    if 9 <= hour <= 17:
        score += 20
    if hour < 8 or hour > 19:
        score -= 15
    if direction == 'later':
        score += 5
    return max(0, score)


def get_alternative_days(current_day: str) -> list[str]:
    """Adjacent days first, then the remaining weekdays (Mon-Fri), at most three."""
    index = weekday_index(current_day)
    current = WEEKDAY_NAMES[index]
    alternatives: list[str] = []
    if index > 0:
        alternatives.append(WEEKDAY_NAMES[index - 1])
    if index < len(WEEKDAY_NAMES) - 1:
        alternatives.append(WEEKDAY_NAMES[index + 1])
    for position, day in enumerate(WEEKDAY_NAMES):
        if day != current and day not in alternatives and position < 5:
            alternatives.append(day)
    return alternatives[:MAX_ALTERNATIVE_DAYS]


def _is_free(start: time, end: time, busy: list[tuple[time, time]]) -> bool:
    return not any(overlaps(start, end, busy_start, busy_end) for busy_start, busy_end in busy)


def _shifted(start: time, end: time, delta_minutes: int) -> tuple[time, time] | None:
    new_start = add_minutes(start, delta_minutes)
    new_end = add_minutes(end, delta_minutes)
    if new_start is None or new_end is None or new_end <= new_start:
        return None
    if new_start < EARLIEST_START or new_end.hour >= LATEST_END_HOUR:
        return None
    return new_start, new_end


def suggest_alternative_times(
    original_start: time,
    original_end: time,
    busy: list[tuple[time, time]],
    preferences: AdjustmentPreferences,
    *,
    day_of_week: str | None = None,
    busy_by_day: dict[str, list[tuple[time, time]]] | None = None,
) -> list[dict[str, Any]]:
    suggestions: list[dict[str, Any]] = []
    max_adjustment = int(preferences.max_adjustment_minutes)
    directions = []
    if preferences.preferred_direction in ('earlier', 'any'):
        directions.append(('earlier', -1))
    if preferences.preferred_direction in ('later', 'any'):
        directions.append(('later', 1))

    for direction, sign in directions:
        for adjustment in range(ADJUSTMENT_STEP_MINUTES, max_adjustment + 1, ADJUSTMENT_STEP_MINUTES):
            candidate = _shifted(original_start, original_end, sign * adjustment)
            if candidate is None or not _is_free(candidate[0], candidate[1], busy):
                continue
            suggestions.append(
                {
                    'day_of_week': day_of_week,
                    'start_time': _fmt(candidate[0]),
                    'end_time': _fmt(candidate[1]),
                    'score': calculate_time_score(candidate[0], adjustment, direction),
                    'adjustment_minutes': adjustment,
                    'direction': direction,
                    'reason': f'Moved {adjustment} minutes {direction} to avoid conflict',
                }
            )

    if preferences.allow_day_change and day_of_week:
        for alternative in get_alternative_days(day_of_week):
            alternative_busy = (busy_by_day or {}).get(alternative, [])
            if not _is_free(original_start, original_end, alternative_busy):
                continue
            suggestions.append(
                {
                    'day_of_week': alternative,
                    'start_time': _fmt(original_start),
                    'end_time': _fmt(original_end),
                    'score': DAY_CHANGE_SCORE,
                    'adjustment_minutes': 0,
                    'direction': 'day_change',
                    'reason': f'Same time on {alternative} (day change)',
                }
            )

    # sorted() is stable, so equal scores keep generation order.
    return sorted(suggestions, key=lambda row: -row['score'])[:MAX_SUGGESTIONS]


def _suggestions_for(
    db: Session,
    *,
    teacher_id: int,
    slot: SlotRequest,
    preferences: AdjustmentPreferences,
    today: date,
) -> list[dict[str, Any]]:
    busy = busy_intervals_for(db, teacher_id=teacher_id, day_of_week=slot.day_of_week, slot_date=slot.slot_date, today=today)
    busy_by_day: dict[str, list[tuple[time, time]]] = {}
    if preferences.allow_day_change:
        for alternative in get_alternative_days(slot.day_of_week):
            busy_by_day[alternative] = busy_intervals_for(db, teacher_id=teacher_id, day_of_week=alternative, today=today)
    return suggest_alternative_times(
        slot.start_time,
        slot.end_time,
        busy,
        preferences,
        day_of_week=slot.day_of_week,
        busy_by_day=busy_by_day,
    )


def _create_template(db: Session, *, teacher_id: int, day_of_week: str, start: time, end: time) -> TimeSlotTemplate:
    row = TimeSlotTemplate(
        teacher_id=int(teacher_id),
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
        duration_minutes=to_minutes(end) - to_minutes(start),
        is_available=True,
        is_recurring=False,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def resolve_conflicts(
    db: Session,
    *,
    teacher_id: int,
    proposed_slots: list[SlotRequest],
    strategy: str,
    preferences: AdjustmentPreferences | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    if strategy not in STRATEGIES:
        raise ValidationError(f'Invalid resolution strategy: {strategy}')
    prefs = (preferences or AdjustmentPreferences()).validate()
    today = time_provider.today()

    resolutions: list[dict[str, Any]] = []
    for slot in proposed_slots:
        slot = slot.validate()
        resolution: dict[str, Any] = {
            'proposed_slot': slot.as_dict(),
            'resolution_applied': False,
            'override': False,
            'suggestions': [],
            'created_slot': None,
            'error': None,
        }

        if strategy == STRATEGY_FORCE:
            try:
                row = _create_template(db, teacher_id=teacher_id, day_of_week=slot.day_of_week, start=slot.start_time, end=slot.end_time)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception('conflict_force_override_failed teacher_id=%s', teacher_id)
                resolution['error'] = f'Failed to force create slot: {exc.__class__.__name__}'
            else:
                logger.warning('conflict_force_override teacher_id=%s template_id=%s', teacher_id, row.id)
                resolution.update(resolution_applied=True, override=True, created_slot=serialize_template(row))
            resolutions.append(resolution)
            continue

        suggestions = _suggestions_for(db, teacher_id=teacher_id, slot=slot, preferences=prefs, today=today)
        resolution['suggestions'] = suggestions

        if strategy == STRATEGY_AUTO_ADJUST:
            if not suggestions:
                resolution['error'] = 'No suitable alternative times found'
            else:
                best = suggestions[0]
                try:
                    row = _create_template(
                        db,
                        teacher_id=teacher_id,
                        day_of_week=best['day_of_week'],
                        start=time.fromisoformat(best['start_time']),
                        end=time.fromisoformat(best['end_time']),
                    )
                except SQLAlchemyError as exc:
                    db.rollback()
                    logger.exception('conflict_auto_adjust_failed teacher_id=%s', teacher_id)
                    resolution['error'] = f'Failed to create adjusted slot: {exc.__class__.__name__}'
                else:
                    resolution.update(resolution_applied=True, created_slot=serialize_template(row))
        resolutions.append(resolution)

    return {
        'resolution_strategy': strategy,
        'resolutions': resolutions,
        'total_resolved': sum(1 for row in resolutions if row['resolution_applied']),
    }


def create_blocked_slot(
    db: Session,
    *,
    teacher_id: int,
    start_time_value: time,
    end_time_value: time,
    day_of_week: str | None = None,
    block_date: date | None = None,
    reason: str = '',
) -> BlockedSlot:
    if end_time_value <= start_time_value:
        raise ValidationError('end_time must be after start_time')
    if not day_of_week and block_date is None:
        raise ValidationError('day_of_week or date is required')
    normalized_day = WEEKDAY_NAMES[weekday_index(day_of_week)] if day_of_week else None
    row = BlockedSlot(
        teacher_id=int(teacher_id),
        day_of_week=normalized_day,
        block_date=block_date,
        start_time=start_time_value,
        end_time=end_time_value,
        reason=(reason or '').strip(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
