import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tutorhub.db import Base
from tutorhub.errors import NotFoundError, ValidationError
from tutorhub.models import ClassSession, ClassSessionStatus, CreditAccount, CreditTransaction, PaymentStatus
from tutorhub.services.credit_ledger_service import deduct_credits, list_transactions, purchase_credits
from tutorhub.services.settlement_service import derive_payment_status, settle_class_session


class SettlementServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_settlement.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.db = self._session_factory()
        for table in (CreditTransaction, ClassSession, CreditAccount):
            self.db.query(table).delete()
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def _completed_session(self, *, minutes: int, student_id: int = 20) -> ClassSession:
        row = ClassSession(
            teacher_id=10,
            student_id=student_id,
            student_email='student@example.com',
            session_date=date(2024, 1, 1),
            start_time=datetime(2024, 1, 1, 17, 0),
            end_time=datetime(2024, 1, 1, 17, 0),
            duration_minutes=minutes,
            status=ClassSessionStatus.COMPLETED.value,
            topics_covered=[],
        )
        self.db.add(row)
        self.db.commit()
        return row

    def _account(self, student_id: int = 20) -> CreditAccount:
        return self.db.query(CreditAccount).filter(CreditAccount.student_id == student_id).one()

    def test_full_balance_marks_session_paid(self):
        purchase_credits(self.db, teacher_id=10, student_id=20, hours=5.0)
        session = self._completed_session(minutes=60)

        result = settle_class_session(self.db, session.id)

        self.assertTrue(result.success)
        self.assertFalse(result.already_processed)
        self.assertEqual(result.credits_deducted, 1.0)
        self.assertEqual(result.payment_status, PaymentStatus.PAID.value)
        self.assertTrue(result.is_paid)
        self.db.expire_all()
        account = self._account()
        self.assertAlmostEqual(account.balance_hours, 4.0)
        self.assertAlmostEqual(account.total_used, 1.0)

    def test_short_balance_is_partial(self):
        purchase_credits(self.db, teacher_id=10, student_id=20, hours=0.5)
        session = self._completed_session(minutes=60)

        result = settle_class_session(self.db, session.id)

        self.assertEqual(result.credits_deducted, 0.5)
        self.assertEqual(result.payment_status, PaymentStatus.PARTIAL.value)
        self.assertFalse(result.is_paid)
        self.db.expire_all()
        self.assertEqual(self._account().balance_hours, 0.0)

    def test_no_account_is_unpaid_without_ledger_rows(self):
        session = self._completed_session(minutes=45)

        result = settle_class_session(self.db, session.id)

        self.assertEqual(result.credits_deducted, 0.0)
        self.assertEqual(result.payment_status, PaymentStatus.UNPAID.value)
        self.assertEqual(self.db.query(CreditTransaction).count(), 0)

    def test_zero_balance_is_unpaid(self):
        purchase_credits(self.db, teacher_id=10, student_id=20, hours=1.0)
        deduct_credits(self.db, teacher_id=10, student_id=20, hours=1.0)
        session = self._completed_session(minutes=30)

        result = settle_class_session(self.db, session.id)

        self.assertEqual(result.payment_status, PaymentStatus.UNPAID.value)
        self.assertEqual(result.credits_deducted, 0.0)

    def test_settlement_is_idempotent(self):
        purchase_credits(self.db, teacher_id=10, student_id=20, hours=5.0)
        session = self._completed_session(minutes=90)

        first = settle_class_session(self.db, session.id)
        second = settle_class_session(self.db, session.id)

        self.assertFalse(first.already_processed)
        self.assertTrue(second.already_processed)
        self.assertEqual(second.credits_deducted, 1.5)
        self.assertEqual(second.payment_status, first.payment_status)
        self.db.expire_all()
        self.assertAlmostEqual(self._account().balance_hours, 3.5)
        deductions = self.db.query(CreditTransaction).filter(CreditTransaction.transaction_type == 'deduction').count()
        self.assertEqual(deductions, 1)

    def test_in_progress_session_is_rejected(self):
        row = ClassSession(
            teacher_id=10,
            student_id=20,
            session_date=date(2024, 1, 1),
            start_time=datetime(2024, 1, 1, 17, 0),
            status=ClassSessionStatus.IN_PROGRESS.value,
            topics_covered=[],
        )
        self.db.add(row)
        self.db.commit()

        with self.assertRaises(ValidationError):
            settle_class_session(self.db, row.id)

    def test_missing_session_is_not_found(self):
        with self.assertRaises(NotFoundError):
            settle_class_session(self.db, 9999)

    def test_derive_payment_status(self):
        self.assertEqual(derive_payment_status(0.0, 0.0), PaymentStatus.PAID.value)
        self.assertEqual(derive_payment_status(0.0, 1.0), PaymentStatus.UNPAID.value)
        self.assertEqual(derive_payment_status(0.25, 1.0), PaymentStatus.PARTIAL.value)
        self.assertEqual(derive_payment_status(1.0, 1.0), PaymentStatus.PAID.value)


class CreditLedgerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._tmpdir = tempfile.TemporaryDirectory()
        db_path = Path(cls._tmpdir.name) / 'test_credit_ledger.db'
        cls._engine = create_engine(f"sqlite:///{db_path}", connect_args={'check_same_thread': False})
        cls._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=cls._engine)
        Base.metadata.create_all(bind=cls._engine)

    @classmethod
    def tearDownClass(cls):
        cls._engine.dispose()
        cls._tmpdir.cleanup()

    def setUp(self):
        self.db = self._session_factory()
        for table in (CreditTransaction, CreditAccount):
            self.db.query(table).delete()
        self.db.commit()

    def tearDown(self):
        self.db.close()

    def test_purchase_creates_account_and_ledger_row(self):
        payload = purchase_credits(self.db, teacher_id=1, student_id=2, hours=3.0, reference_id='inv-1', parent_id=7)

        self.assertEqual(payload['account']['balance_hours'], 3.0)
        self.assertEqual(payload['account']['parent_id'], 7)
        self.assertEqual(payload['transaction']['transaction_type'], 'purchase')
        self.assertEqual(payload['transaction']['balance_after'], 3.0)
        self.assertEqual(payload['transaction']['reference_id'], 'inv-1')

    def test_balance_after_tracks_running_balance(self):
        purchase_credits(self.db, teacher_id=1, student_id=2, hours=2.0)
        deduct_credits(self.db, teacher_id=1, student_id=2, hours=0.75)
        purchase_credits(self.db, teacher_id=1, student_id=2, hours=1.0)

        account = self.db.query(CreditAccount).one()
        rows = list(reversed(list_transactions(self.db, [account.id])))
        self.assertEqual([row.balance_after for row in rows], [2.0, 1.25, 2.25])
        self.assertAlmostEqual(account.balance_hours, 2.25)
        self.assertAlmostEqual(account.total_purchased, 3.0)
        self.assertAlmostEqual(account.total_used, 0.75)

    def test_deduction_never_overdraws(self):
        purchase_credits(self.db, teacher_id=1, student_id=2, hours=1.0)

        with self.assertRaises(ValidationError):
            deduct_credits(self.db, teacher_id=1, student_id=2, hours=1.5)

        self.db.expire_all()
        account = self.db.query(CreditAccount).one()
        self.assertEqual(account.balance_hours, 1.0)
        self.assertEqual(self.db.query(CreditTransaction).count(), 1)

    def test_deduct_without_account_is_not_found(self):
        with self.assertRaises(NotFoundError):
            deduct_credits(self.db, teacher_id=1, student_id=99, hours=1.0)

    def test_purchase_reactivates_inactive_account(self):
        purchase_credits(self.db, teacher_id=1, student_id=2, hours=1.0)
        account = self.db.query(CreditAccount).one()
        account.is_active = False
        self.db.commit()

        payload = purchase_credits(self.db, teacher_id=1, student_id=2, hours=1.0)

        self.assertTrue(payload['account']['is_active'])
        self.assertEqual(payload['account']['balance_hours'], 2.0)
        self.assertEqual(self.db.query(CreditAccount).count(), 1)

    def test_non_positive_hours_rejected(self):
        with self.assertRaises(ValidationError):
            purchase_credits(self.db, teacher_id=1, student_id=2, hours=0)
