from datetime import date, datetime, time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


DayName = Literal['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


class ClassSessionStartRequest(BaseModel):
    meeting_url: str = Field(min_length=1, max_length=500)
    enrollment_id: int | None = None
    student_id: int | None = None
    student_email: str | None = None
    manual_override: bool = False
    start_time: datetime | None = None

    @model_validator(mode='after')
    def _needs_student(self):
        if not (self.enrollment_id or self.student_id or self.student_email):
            raise ValueError('enrollment_id, student_id or student_email is required')
        return self


class ClassSessionEndRequest(BaseModel):
    end_time: datetime | None = None
    content: str | None = None
    topics_covered: list[str] = Field(default_factory=list)
    homework_assigned: str | None = None


class ExtensionStartRequest(BaseModel):
    meeting_url: str = Field(min_length=1, max_length=500)
    student_email: str | None = None


class ExtensionEndRequest(BaseModel):
    session_id: int | None = None
    enrollment_id: int | None = None
    meeting_url: str | None = None
    student_email: str | None = None
    end_time: datetime | None = None
    content: str | None = None


class CreditPurchaseRequest(BaseModel):
    student_id: int
    hours: float = Field(gt=0, le=1000)
    description: str = ''
    reference_id: str | None = None
    rate_per_hour: float | None = Field(default=None, ge=0)
    parent_id: int | None = None


class CreditDeductRequest(BaseModel):
    student_id: int
    hours: float = Field(gt=0, le=1000)
    description: str = ''


class SlotCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day_of_week: DayName
    start_time: time
    end_time: time
    slot_date: date | None = Field(default=None, alias='date')


class DateRange(BaseModel):
    start_date: date
    end_date: date


class ConflictCheckRequest(BaseModel):
    slots: list[SlotCandidate] = Field(min_length=1)
    check_time_slots: bool = True
    check_schedule_slots: bool = True
    date_range: DateRange | None = None


class AdjustmentPreferencesPayload(BaseModel):
    preferred_direction: Literal['earlier', 'later', 'any'] = 'any'
    max_adjustment_minutes: int = Field(default=60, ge=15, le=120)
    allow_day_change: bool = False


class ConflictResolutionRequest(BaseModel):
    proposed_slots: list[SlotCandidate] = Field(min_length=1)
    resolution_strategy: Literal['auto_adjust', 'suggest_alternatives', 'force_override']
    adjustment_preferences: AdjustmentPreferencesPayload | None = None


class RecurringSlotPayload(BaseModel):
    day_of_week: DayName
    start_time: time
    end_time: time
    subject: str | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)


class RecurringCreateRequest(BaseModel):
    slots: list[RecurringSlotPayload] = Field(min_length=1, max_length=20)
    weeks: int = Field(default=4, ge=1, le=52)
    start_date: date | None = None
    create_time_slots: bool = True
    create_schedule_slots: bool = True
    preview_only: bool = False
    exception_dates: list[date] = Field(default_factory=list)


class RecurringUpdates(BaseModel):
    day_of_week: DayName | None = None
    start_time: time | None = None
    end_time: time | None = None
    subject: str | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)
    is_available: bool | None = None


class RecurringModifyRequest(BaseModel):
    template_id: int
    action: Literal['update_series', 'update_single', 'delete_series', 'delete_single']
    updates: RecurringUpdates | None = None
    apply_from_date: date | None = None
    include_booked: bool = False


class BlockedSlotRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_time: time
    end_time: time
    day_of_week: DayName | None = None
    block_date: date | None = Field(default=None, alias='date')
    reason: str = Field(default='', max_length=255)


class ScheduleSlotCreateRequest(BaseModel):
    date: date
    start_time: time
    end_time: time
    subject: str | None = None
    duration_minutes: int | None = Field(default=None, ge=15, le=480)


class ScheduleSlotUpdateRequest(BaseModel):
    start_time: time | None = None
    end_time: time | None = None
    subject: str | None = None


class SlotBookRequest(BaseModel):
    student_id: int | None = None


class WaitlistJoinRequest(BaseModel):
    teacher_id: int | None = None
    student_id: int | None = None
    schedule_slot_id: int | None = None
    template_id: int | None = None
    preferred_date: date | None = None
    day_of_week: DayName | None = None
    start_time: time | None = None
    end_time: time | None = None
    priority: int = Field(default=1, ge=1, le=10)


class WaitlistManageRequest(BaseModel):
    waitlist_id: int
    action: Literal['notify', 'fulfill', 'remove', 'extend']
    notification_message: str | None = None
    extend_hours: int | None = Field(default=None, ge=1, le=168)
