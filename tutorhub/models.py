from datetime import date, datetime, time
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tutorhub.db import Base


class Role(str, Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'
    STUDENT = 'student'
    PARENT = 'parent'


class ClassSessionStatus(str, Enum):
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'


class PaymentStatus(str, Enum):
    PAID = 'paid'
    PARTIAL = 'partial'
    UNPAID = 'unpaid'


class SlotStatus(str, Enum):
    AVAILABLE = 'available'
    BOOKED = 'booked'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class WaitlistStatus(str, Enum):
    WAITING = 'waiting'
    NOTIFIED = 'notified'
    FULFILLED = 'fulfilled'
    EXPIRED = 'expired'


class Enrollment(Base):
    __tablename__ = 'enrollments'
    __table_args__ = (
        Index('ix_enrollments_teacher_student', 'teacher_id', 'student_id'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(Integer, index=True)
    student_id: Mapped[int] = mapped_column(Integer, index=True)
    student_name: Mapped[str] = mapped_column(String(180), default='')
    student_email: Mapped[str] = mapped_column(String(255), index=True)
    subject: Mapped[str] = mapped_column(String(120), default='General')
    meeting_url: Mapped[str | None] = mapped_column(String(500), nullable=True, index=True)
    tentative_schedule: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    classes_per_week: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(20), default='active', index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    class_sessions: Mapped[list['ClassSession']] = relationship('ClassSession', back_populates='enrollment')


class ClassSession(Base):
    __tablename__ = 'class_sessions'
    __table_args__ = (
        Index(
            'uq_class_sessions_one_in_progress',
            'teacher_id',
            'student_id',
            'session_date',
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
        Index('ix_class_sessions_teacher_date', 'teacher_id', 'session_date'),
        Index('ix_class_sessions_status_start', 'status', 'start_time'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    enrollment_id: Mapped[int | None] = mapped_column(ForeignKey('enrollments.id'), nullable=True, index=True)
    teacher_id: Mapped[int] = mapped_column(Integer, index=True)
    student_id: Mapped[int] = mapped_column(Integer, index=True)
    student_email: Mapped[str] = mapped_column(String(255), default='')
    schedule_slot_id: Mapped[int | None] = mapped_column(ForeignKey('schedule_slots.id'), nullable=True, index=True)
    session_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ClassSessionStatus.IN_PROGRESS.value, index=True)
    detected_automatically: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    meeting_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    subject: Mapped[str] = mapped_column(String(120), default='General')
    content: Mapped[str] = mapped_column(Text, default='')
    topics_covered: Mapped[list] = mapped_column(JSON, default=list)
    homework_assigned: Mapped[str | None] = mapped_column(Text, nullable=True)
    credits_deducted: Mapped[float | None] = mapped_column(Float, nullable=True)
    payment_status: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    enrollment: Mapped['Enrollment | None'] = relationship('Enrollment', back_populates='class_sessions')


class CreditAccount(Base):
    __tablename__ = 'credit_accounts'
    __table_args__ = (
        UniqueConstraint('teacher_id', 'student_id', name='uq_credit_accounts_teacher_student'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(Integer, index=True)
    student_id: Mapped[int] = mapped_column(Integer, index=True)
    parent_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    balance_hours: Mapped[float] = mapped_column(Float, default=0.0)
    total_purchased: Mapped[float] = mapped_column(Float, default=0.0)
    total_used: Mapped[float] = mapped_column(Float, default=0.0)
    rate_per_hour: Mapped[float | None] = mapped_column(Float, nullable=True)
    subject: Mapped[str | None] = mapped_column(String(120), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transactions: Mapped[list['CreditTransaction']] = relationship(
        'CreditTransaction',
        back_populates='account',
        order_by='CreditTransaction.id',
    )


class CreditTransaction(Base):
    __tablename__ = 'credit_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    credit_account_id: Mapped[int] = mapped_column(ForeignKey('credit_accounts.id'), index=True)
    transaction_type: Mapped[str] = mapped_column(String(20), index=True)
    hours_amount: Mapped[float] = mapped_column(Float)
    balance_after: Mapped[float] = mapped_column(Float)
    description: Mapped[str] = mapped_column(String(255), default='')
    reference_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    performed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    account: Mapped['CreditAccount'] = relationship('CreditAccount', back_populates='transactions')


class TimeSlotTemplate(Base):
    __tablename__ = 'time_slot_templates'
    __table_args__ = (
        Index('ix_time_slot_templates_teacher_day', 'teacher_id', 'day_of_week'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(Integer, index=True)
    day_of_week: Mapped[str] = mapped_column(String(10))
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    subject: Mapped[str | None] = mapped_column(String(120), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ScheduleSlot(Base):
    __tablename__ = 'schedule_slots'
    __table_args__ = (
        Index('ix_schedule_slots_teacher_date_status', 'teacher_id', 'slot_date', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(Integer, index=True)
    slot_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    subject: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=SlotStatus.AVAILABLE.value, index=True)
    student_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False)
    recurrence_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    template_id: Mapped[int | None] = mapped_column(ForeignKey('time_slot_templates.id', ondelete='SET NULL'), nullable=True, index=True)
    booked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class BlockedSlot(Base):
    __tablename__ = 'blocked_slots'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(Integer, index=True)
    day_of_week: Mapped[str | None] = mapped_column(String(10), nullable=True)
    block_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    reason: Mapped[str] = mapped_column(String(255), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class WaitlistEntry(Base):
    __tablename__ = 'waitlist_entries'
    __table_args__ = (
        Index('ix_waitlist_entries_window', 'teacher_id', 'day_of_week', 'start_time', 'end_time', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    teacher_id: Mapped[int] = mapped_column(Integer, index=True)
    student_id: Mapped[int] = mapped_column(Integer, index=True)
    schedule_slot_id: Mapped[int | None] = mapped_column(ForeignKey('schedule_slots.id', ondelete='SET NULL'), nullable=True, index=True)
    template_id: Mapped[int | None] = mapped_column(ForeignKey('time_slot_templates.id', ondelete='SET NULL'), nullable=True)
    preferred_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    day_of_week: Mapped[str] = mapped_column(String(10))
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(20), default=WaitlistStatus.WAITING.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class RateLimitState(Base):
    __tablename__ = 'rate_limit_states'
    __table_args__ = (
        UniqueConstraint('identifier', 'category', name='uq_rate_limit_states_identifier_category'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    identifier: Mapped[str] = mapped_column(String(120), index=True)
    category: Mapped[str] = mapped_column(String(80), index=True)
    window_start: Mapped[datetime] = mapped_column(DateTime)
    request_count: Mapped[int] = mapped_column(Integer, default=0)
