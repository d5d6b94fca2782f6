import tempfile
import unittest
from datetime import date, datetime, time
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tutorhub.core.time_provider import TimeProvider
from tutorhub.db import Base
from tutorhub.errors import ConflictError, NotFoundError, ValidationError
from tutorhub.models import BlockedSlot, ScheduleSlot, SlotStatus, TimeSlotTemplate, WaitlistEntry
from tutorhub.services.recurring_slot_service import (
    RecurringSlotSpec,
    create_recurring_slots,
    generate_dates,
    modify_series,
)


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


CLOCK = FixedTimeProvider(datetime(2023, 12, 31, 9, 0))
MONDAY_10AM = RecurringSlotSpec('Monday', time(10, 0), time(11, 0), subject='Physics')


def test_generate_dates_weekly_from_monday():
    assert generate_dates('Monday', date(2024, 1, 1), 4) == [
        date(2024, 1, 1),
        date(2024, 1, 8),
        date(2024, 1, 15),
        date(2024, 1, 22),
    ]


def test_generate_dates_skips_exceptions_and_aligns_to_weekday():
    assert generate_dates('Monday', date(2024, 1, 3), 3, [date(2024, 1, 15)]) == [
        date(2024, 1, 8),
        date(2024, 1, 22),
    ]


class RecurringSlotServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_recurring_slots.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.db = self._session_factory()
        for table in (WaitlistEntry, ScheduleSlot, BlockedSlot, TimeSlotTemplate):
            self.db.query(table).delete()
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def _create_series(self, **overrides):
        params = {
            'teacher_id': 1,
            'slots': [MONDAY_10AM],
            'weeks': 4,
            'start_date': date(2024, 1, 1),
            'time_provider': CLOCK,
        }
        params.update(overrides)
        return create_recurring_slots(self.db, **params)

    def test_preview_reports_dates_without_writing(self):
        result = self._create_series(preview_only=True, exception_dates=[date(2024, 1, 8)])

        self.assertFalse(result['has_conflicts'])
        self.assertEqual(result['preview']['total_schedule_slots'], 3)
        self.assertEqual(result['preview']['slot_details'][0]['dates'], ['2024-01-01', '2024-01-15', '2024-01-22'])
        self.assertEqual(self.db.query(ScheduleSlot).count(), 0)
        self.assertEqual(self.db.query(TimeSlotTemplate).count(), 0)

    def test_creates_template_and_linked_schedule_slots(self):
        result = self._create_series()

        self.assertEqual(result['results']['time_slots_created'], 1)
        self.assertEqual(result['results']['schedule_slots_created'], 4)
        self.assertEqual(result['results']['errors'], [])
        template = self.db.query(TimeSlotTemplate).one()
        self.assertTrue(template.is_recurring)
        self.assertEqual(template.recurrence_end_date, date(2024, 1, 29))
        self.assertEqual(template.duration_minutes, 60)
        slots = self.db.query(ScheduleSlot).order_by(ScheduleSlot.slot_date).all()
        self.assertEqual([row.template_id for row in slots], [template.id] * 4)
        self.assertTrue(all(row.recurrence_type == 'weekly' for row in slots))

    def test_default_start_is_tomorrow(self):
        result = self._create_series(start_date=None, weeks=1, preview_only=True)
        self.assertEqual(result['preview']['start_date'], '2024-01-01')

    def test_conflicting_series_is_rejected_atomically(self):
        self.db.add(
            ScheduleSlot(
                teacher_id=1,
                slot_date=date(2024, 1, 15),
                start_time=time(10, 30),
                end_time=time(11, 30),
                status=SlotStatus.BOOKED.value,
            )
        )
        self.db.commit()

        with self.assertRaises(ConflictError) as ctx:
            self._create_series()

        self.assertEqual(ctx.exception.detail['code'], 'RECURRING_CONFLICTS')
        self.assertEqual(len(ctx.exception.detail['conflicts']), 1)
        self.assertEqual(ctx.exception.detail['conflicts'][0]['slot']['date'], '2024-01-15')
        self.assertEqual(self.db.query(ScheduleSlot).count(), 1)
        self.assertEqual(self.db.query(TimeSlotTemplate).count(), 0)

    def test_limits_are_validated(self):
        with self.assertRaises(ValidationError):
            self._create_series(weeks=53)
        with self.assertRaises(ValidationError):
            self._create_series(slots=[RecurringSlotSpec('Monday', time(10, 0), time(10, 10))])
        with self.assertRaises(ValidationError):
            self._create_series(slots=[RecurringSlotSpec('Monday', time(11, 0), time(10, 0))])
        with self.assertRaises(ValidationError):
            self._create_series(slots=[])

    def test_update_series_moves_available_slots_only(self):
        self._create_series()
        template = self.db.query(TimeSlotTemplate).one()
        booked = self.db.query(ScheduleSlot).filter(ScheduleSlot.slot_date == date(2024, 1, 8)).one()
        booked.status = SlotStatus.BOOKED.value
        booked.student_id = 42
        self.db.commit()

        result = modify_series(
            self.db,
            teacher_id=1,
            template_id=template.id,
            action='update_series',
            updates={'start_time': time(11, 0), 'end_time': time(12, 0)},
            time_provider=CLOCK,
        )

        self.assertEqual(result['results']['schedule_slots_updated'], 3)
        self.db.expire_all()
        self.assertEqual(self.db.get(TimeSlotTemplate, template.id).start_time, time(11, 0))
        self.assertEqual(self.db.get(ScheduleSlot, booked.id).start_time, time(10, 0))
        moved = self.db.query(ScheduleSlot).filter(ScheduleSlot.start_time == time(11, 0)).count()
        self.assertEqual(moved, 3)

    def test_update_series_can_include_booked_slots(self):
        self._create_series()
        template = self.db.query(TimeSlotTemplate).one()
        booked = self.db.query(ScheduleSlot).filter(ScheduleSlot.slot_date == date(2024, 1, 8)).one()
        booked.status = SlotStatus.BOOKED.value
        self.db.commit()

        result = modify_series(
            self.db,
            teacher_id=1,
            template_id=template.id,
            action='update_series',
            updates={'subject': 'Chemistry'},
            include_booked=True,
            time_provider=CLOCK,
        )

        self.assertEqual(result['results']['schedule_slots_updated'], 4)
        self.db.expire_all()
        self.assertEqual(self.db.get(ScheduleSlot, booked.id).subject, 'Chemistry')

    def test_update_series_respects_apply_from_date(self):
        self._create_series()
        template = self.db.query(TimeSlotTemplate).one()

        result = modify_series(
            self.db,
            teacher_id=1,
            template_id=template.id,
            action='update_series',
            updates={'subject': 'Chemistry'},
            apply_from_date=date(2024, 1, 15),
            time_provider=CLOCK,
        )

        self.assertEqual(result['results']['schedule_slots_updated'], 2)

    def test_delete_series_keeps_booked_slots(self):
        self._create_series()
        template = self.db.query(TimeSlotTemplate).one()
        booked = self.db.query(ScheduleSlot).filter(ScheduleSlot.slot_date == date(2024, 1, 8)).one()
        booked.status = SlotStatus.BOOKED.value
        self.db.commit()

        result = modify_series(self.db, teacher_id=1, template_id=template.id, action='delete_series', time_provider=CLOCK)

        self.assertEqual(result['results']['schedule_slots_deleted'], 3)
        self.assertEqual(result['results']['time_slots_deleted'], 1)
        self.db.expire_all()
        self.assertEqual(self.db.query(TimeSlotTemplate).count(), 0)
        remaining = self.db.query(ScheduleSlot).one()
        self.assertEqual(remaining.id, booked.id)
        self.assertIsNone(remaining.template_id)

    def test_single_actions_are_rejected(self):
        self._create_series()
        template = self.db.query(TimeSlotTemplate).one()
        with self.assertRaises(ValidationError):
            modify_series(self.db, teacher_id=1, template_id=template.id, action='update_single', time_provider=CLOCK)

    def test_unknown_template_is_not_found(self):
        with self.assertRaises(NotFoundError):
            modify_series(self.db, teacher_id=1, template_id=999, action='delete_series', time_provider=CLOCK)
