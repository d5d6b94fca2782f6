import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tutorhub.core.time_provider import TimeProvider
from tutorhub.db import Base
from tutorhub.models import ClassSession, ClassSessionStatus, CreditAccount, CreditTransaction, Enrollment, PaymentStatus
from tutorhub.services.auto_detection_job import (
    AUTO_END_TAG,
    EMERGENCY_END_TAG,
    cleanup_stale_sessions,
    run_auto_detection,
)
from tutorhub.services.credit_ledger_service import purchase_credits
from tutorhub.services.meeting_probe import CONFIDENCE_HIGH, CONFIDENCE_LOW, CONFIDENCE_MEDIUM, MeetingStatus


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        return self._frozen_dt


class ScriptedProbe:
    def __init__(self, statuses: dict):
        self.statuses = statuses
        self.calls = []

    def check(self, meeting_url: str) -> MeetingStatus:
        self.calls.append(meeting_url)
        status = self.statuses[meeting_url]
        if isinstance(status, Exception):
            raise status
        return status


LIVE = MeetingStatus(True, False, CONFIDENCE_MEDIUM, status_code=200)
GONE = MeetingStatus(False, False, CONFIDENCE_HIGH, status_code=404)
UNSURE = MeetingStatus(True, False, CONFIDENCE_LOW, status_code=200)

# 2024-01-01 is a Monday.
MONDAY_5PM = datetime(2024, 1, 1, 17, 0)


class AutoDetectionJobTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_auto_detection.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.db = self._session_factory()
        for table in (CreditTransaction, ClassSession, CreditAccount, Enrollment):
            self.db.query(table).delete()
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def _enrollment(self, *, student_id: int, meeting_url: str, schedule_time: str = '5:00 PM') -> Enrollment:
        row = Enrollment(
            teacher_id=10,
            student_id=student_id,
            student_name=f'Student {student_id}',
            student_email=f's{student_id}@example.com',
            meeting_url=meeting_url,
            tentative_schedule={'days': [{'day': 'Monday', 'time': schedule_time}]},
            classes_per_week=1,
            status='active',
        )
        self.db.add(row)
        self.db.commit()
        return row

    def _session(self, enrollment: Enrollment, *, started: datetime, auto: bool, status: str = ClassSessionStatus.IN_PROGRESS.value) -> ClassSession:
        row = ClassSession(
            enrollment_id=enrollment.id,
            teacher_id=enrollment.teacher_id,
            student_id=enrollment.student_id,
            student_email=enrollment.student_email,
            session_date=started.date(),
            start_time=started,
            status=status,
            detected_automatically=auto,
            meeting_url=enrollment.meeting_url,
            content='Auto-detected class',
            topics_covered=[],
        )
        if status == ClassSessionStatus.COMPLETED.value:
            row.end_time = started
            row.duration_minutes = 0
            row.credits_deducted = 0.0
            row.payment_status = PaymentStatus.PAID.value
        self.db.add(row)
        self.db.commit()
        return row

    def test_live_meeting_starts_auto_session(self):
        enrollment = self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        probe = ScriptedProbe({'https://meet.example.com/a': LIVE})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['checked'], 1)
        self.assertEqual(summary['started'], 1)
        self.assertEqual(summary['errors'], 0)
        self.assertEqual(summary['efficiency'], 1.0)
        row = self.db.query(ClassSession).filter(ClassSession.enrollment_id == enrollment.id).one()
        self.assertTrue(row.detected_automatically)
        self.assertEqual(row.status, ClassSessionStatus.IN_PROGRESS.value)
        self.assertEqual(row.start_time, MONDAY_5PM)

    def test_active_session_is_not_started_twice(self):
        enrollment = self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        self._session(enrollment, started=datetime(2024, 1, 1, 16, 50), auto=True)
        probe = ScriptedProbe({'https://meet.example.com/a': LIVE})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['started'], 0)
        self.assertEqual(summary['skip_reasons'], {'already has active log': 1})

    def test_leftover_session_from_yesterday_does_not_block_todays_start(self):
        enrollment = self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        leftover = self._session(enrollment, started=datetime(2023, 12, 31, 21, 0), auto=False)
        meetings = ScriptedProbe({'https://meet.example.com/a': LIVE})

        summary = run_auto_detection(self.db, probe=meetings, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['started'], 1)
        self.assertEqual(summary['skip_reasons'], {})
        self.db.expire_all()
        self.assertEqual(self.db.get(ClassSession, leftover.id).status, ClassSessionStatus.IN_PROGRESS.value)
        today = (
            self.db.query(ClassSession)
            .filter(ClassSession.session_date == MONDAY_5PM.date(), ClassSession.enrollment_id == enrollment.id)
            .one()
        )
        self.assertTrue(today.detected_automatically)

    def test_closed_meeting_ends_active_session(self):
        purchase_credits(self.db, teacher_id=10, student_id=20, hours=2.0)
        enrollment = self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        session = self._session(enrollment, started=datetime(2024, 1, 1, 16, 0), auto=True)
        probe = ScriptedProbe({'https://meet.example.com/a': GONE})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['ended'], 1)
        self.db.expire_all()
        row = self.db.get(ClassSession, session.id)
        self.assertEqual(row.status, ClassSessionStatus.COMPLETED.value)
        self.assertEqual(row.duration_minutes, 60)
        self.assertEqual(row.credits_deducted, 1.0)
        self.assertEqual(row.payment_status, PaymentStatus.PAID.value)

    def test_low_confidence_is_skipped(self):
        self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        probe = ScriptedProbe({'https://meet.example.com/a': UNSURE})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['started'], 0)
        self.assertEqual(summary['skip_reasons'], {'low confidence': 1})

    def test_outside_hours_and_off_schedule_are_skipped(self):
        self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        self._enrollment(student_id=21, meeting_url='https://meet.example.com/b', schedule_time='9:00 AM')
        probe = ScriptedProbe({'https://meet.example.com/a': LIVE, 'https://meet.example.com/b': LIVE})

        night = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(datetime(2024, 1, 1, 23, 30)))
        evening = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(night['skip_reasons'], {'outside hours': 2})
        self.assertEqual(evening['started'], 1)
        self.assertEqual(evening['skip_reasons'], {'not near scheduled time': 1})

    def test_daily_cap_blocks_further_sessions(self):
        enrollment = self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        self._session(enrollment, started=datetime(2024, 1, 1, 9, 0), auto=True, status=ClassSessionStatus.COMPLETED.value)
        self._session(enrollment, started=datetime(2024, 1, 1, 12, 0), auto=True, status=ClassSessionStatus.COMPLETED.value)
        probe = ScriptedProbe({'https://meet.example.com/a': LIVE})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['skip_reasons'], {'daily session limit reached': 1})

    def test_shared_meeting_url_is_probed_once(self):
        self._enrollment(student_id=20, meeting_url='https://meet.example.com/shared')
        self._enrollment(student_id=21, meeting_url='https://meet.example.com/shared')
        probe = ScriptedProbe({'https://meet.example.com/shared': LIVE})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(probe.calls, ['https://meet.example.com/shared'])
        self.assertEqual(summary['urls_probed'], 1)
        self.assertEqual(summary['started'], 2)

    def test_probe_exception_is_treated_as_low_confidence(self):
        self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        probe = ScriptedProbe({'https://meet.example.com/a': RuntimeError('dns failure')})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['errors'], 0)
        self.assertEqual(summary['skip_reasons'], {'low confidence': 1})

    def test_enrollment_failure_is_isolated(self):
        self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        self._enrollment(student_id=21, meeting_url='https://meet.example.com/b')
        probe = ScriptedProbe({'https://meet.example.com/a': LIVE, 'https://meet.example.com/b': GONE})

        with patch(
            'tutorhub.services.auto_detection_job.class_session_service.start_class_session',
            side_effect=RuntimeError('boom'),
        ):
            summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['checked'], 2)
        self.assertEqual(summary['errors'], 1)
        self.assertEqual(summary['error_rate'], 0.5)
        self.assertEqual(summary['skip_reasons'], {'meeting inactive': 1})

    def test_stale_cleanup_closes_long_running_sessions(self):
        purchase_credits(self.db, teacher_id=10, student_id=20, hours=10.0)
        auto_enrollment = self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        manual_enrollment = self._enrollment(student_id=21, meeting_url='https://meet.example.com/b')
        forgotten_enrollment = self._enrollment(student_id=22, meeting_url='https://meet.example.com/c')

        auto_row = self._session(auto_enrollment, started=datetime(2024, 1, 1, 13, 0), auto=True)
        manual_row = self._session(manual_enrollment, started=datetime(2024, 1, 1, 13, 0), auto=False)
        forgotten_row = self._session(forgotten_enrollment, started=datetime(2023, 12, 31, 16, 0), auto=False)

        counters = cleanup_stale_sessions(self.db, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(counters, {'emergency_ended': 1, 'auto_ended': 1, 'cleanup_errors': 0})
        self.db.expire_all()
        auto_row = self.db.get(ClassSession, auto_row.id)
        self.assertEqual(auto_row.status, ClassSessionStatus.COMPLETED.value)
        self.assertEqual(auto_row.duration_minutes, 240)
        self.assertIn(AUTO_END_TAG, auto_row.content)
        self.assertEqual(auto_row.credits_deducted, 4.0)

        forgotten_row = self.db.get(ClassSession, forgotten_row.id)
        self.assertEqual(forgotten_row.duration_minutes, 180)
        self.assertIn(EMERGENCY_END_TAG, forgotten_row.content)
        self.assertEqual(forgotten_row.payment_status, PaymentStatus.UNPAID.value)

        manual_row = self.db.get(ClassSession, manual_row.id)
        self.assertEqual(manual_row.status, ClassSessionStatus.IN_PROGRESS.value)

    def test_cleanup_runs_as_part_of_detection(self):
        enrollment = self._enrollment(student_id=20, meeting_url='https://meet.example.com/a')
        self._session(enrollment, started=datetime(2024, 1, 1, 13, 0), auto=True)
        probe = ScriptedProbe({'https://meet.example.com/a': UNSURE})

        summary = run_auto_detection(self.db, probe=probe, time_provider=FixedTimeProvider(MONDAY_5PM))

        self.assertEqual(summary['cleanup']['auto_ended'], 1)
        self.assertEqual(self.db.query(ClassSession).filter(ClassSession.session_date == date(2024, 1, 1)).count(), 1)
