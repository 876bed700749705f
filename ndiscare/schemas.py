from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator, validator

StaffRatio = Literal["1:1", "2:1", "1:2", "1:3", "1:4"]
_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"


class OrmOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)


def check_shift_window(start: datetime | None, end: datetime) -> datetime:
    if start is None:
        return end
    if (start.tzinfo is None) != (end.tzinfo is None):
        raise ValueError("start_time and end_time must both include a UTC offset or both omit it")
    if end <= start:
        raise ValueError("end_time must be after start_time")
    return end


# Auth and tenants


class LoginIn(BaseModel):
    tenant_slug: str = Field(min_length=2, max_length=80)
    username: str = Field(min_length=2, max_length=80)
    password: str = Field(min_length=1, max_length=200)


class SessionUserOut(BaseModel):
    id: int
    username: str
    full_name: str
    role: str
    tenant_id: int
    tenant_slug: str
    tenant_name: str


class TenantProvisionIn(BaseModel):
    slug: str = Field(min_length=2, max_length=80, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(min_length=2, max_length=120)
    admin_username: str = Field(min_length=2, max_length=80)
    admin_password: str = Field(min_length=8, max_length=200)
    admin_full_name: str = Field(min_length=2, max_length=160)
    admin_email: str | None = Field(default=None, max_length=160)


class TenantProvisionOut(BaseModel):
    tenant_id: int
    slug: str
    name: str
    admin_user_id: int
    admin_username: str


# Staff


class UserCreate(BaseModel):
    username: str = Field(min_length=2, max_length=80)
    password: str = Field(min_length=8, max_length=200)
    full_name: str = Field(min_length=2, max_length=160)
    email: str | None = Field(default=None, max_length=160)
    role: str = "SupportWorker"
    employment_type: Literal["full-time", "part-time", "casual"] = "casual"
    pay_level: int = Field(default=1, ge=1, le=4)
    pay_point: int = Field(default=1, ge=1, le=4)


class UserUpdate(BaseModel):
    full_name: str | None = Field(default=None, min_length=2, max_length=160)
    email: str | None = Field(default=None, max_length=160)
    role: str | None = None
    employment_type: Literal["full-time", "part-time", "casual"] | None = None
    pay_level: int | None = Field(default=None, ge=1, le=4)
    pay_point: int | None = Field(default=None, ge=1, le=4)
    is_active: bool | None = None
    password: str | None = Field(default=None, min_length=8, max_length=200)


class UserOut(OrmOut):
    id: int
    username: str
    full_name: str
    email: str | None = None
    role: str
    employment_type: str
    pay_level: int
    pay_point: int
    is_active: bool


# Clients


class ClientCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=80)
    last_name: str = Field(min_length=1, max_length=80)
    ndis_number: str | None = Field(default=None, pattern=r"^\d{9}$")
    date_of_birth: date | None = None
    address: str | None = Field(default=None, max_length=255)
    emergency_contact: str | None = Field(default=None, max_length=255)
    care_level: str | None = Field(default=None, max_length=40)
    notes: str | None = None


class ClientUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1, max_length=80)
    last_name: str | None = Field(default=None, min_length=1, max_length=80)
    ndis_number: str | None = Field(default=None, pattern=r"^\d{9}$")
    date_of_birth: date | None = None
    address: str | None = Field(default=None, max_length=255)
    emergency_contact: str | None = Field(default=None, max_length=255)
    care_level: str | None = Field(default=None, max_length=40)
    notes: str | None = None


class ClientOut(OrmOut):
    id: int
    first_name: str
    last_name: str
    ndis_number: str | None = None
    date_of_birth: date | None = None
    address: str | None = None
    emergency_contact: str | None = None
    care_level: str | None = None
    notes: str | None = None
    is_active: bool
    created_at: datetime


# Shifts


class ShiftCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    start_time: datetime
    end_time: datetime
    user_id: int | None = None
    client_id: int | None = None
    series_id: str | None = Field(default=None, max_length=64)
    staff_ratio: StaffRatio = "1:1"
    funding_category: str | None = Field(default=None, max_length=80)

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: datetime, values) -> datetime:
        return check_shift_window(values.get("start_time"), value)


class ShiftUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    start_time: datetime | None = None
    end_time: datetime | None = None
    user_id: int | None = None
    client_id: int | None = None
    staff_ratio: StaffRatio | None = None
    funding_category: str | None = Field(default=None, max_length=80)


class ShiftOut(OrmOut):
    id: int
    title: str
    start_time: datetime
    end_time: datetime
    user_id: int | None = None
    client_id: int | None = None
    status: str
    series_id: str | None = None
    staff_ratio: str
    funding_category: str | None = None
    start_timestamp: datetime | None = None
    end_timestamp: datetime | None = None


class RecurrenceRule(BaseModel):
    unit: Literal["daily", "weekly", "fortnightly", "monthly"]
    end_condition: Literal["occurrences", "end_date"]
    occurrences: int | None = Field(default=None, ge=1, le=52)
    end_date: date | None = None

    @model_validator(mode="after")
    def validate_end_condition(self):
        if self.end_condition == "occurrences":
            if self.occurrences is None:
                raise ValueError("occurrences is required when end_condition is 'occurrences'")
            if self.end_date is not None:
                raise ValueError("end_date must be empty when end_condition is 'occurrences'")
        else:
            if self.end_date is None:
                raise ValueError("end_date is required when end_condition is 'end_date'")
            if self.occurrences is not None:
                raise ValueError("occurrences must be empty when end_condition is 'end_date'")
        return self


class RecurrencePreviewIn(BaseModel):
    start_time: datetime
    end_time: datetime
    recurrence: RecurrenceRule

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: datetime, values) -> datetime:
        return check_shift_window(values.get("start_time"), value)


class OccurrenceOut(BaseModel):
    start_time: datetime
    end_time: datetime


class RecurrencePreviewOut(BaseModel):
    count: int
    occurrences: list[OccurrenceOut]


class RecurringShiftCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    start_time: datetime
    end_time: datetime
    user_id: int | None = None
    client_id: int | None = None
    staff_ratio: StaffRatio = "1:1"
    funding_category: str | None = Field(default=None, max_length=80)
    recurrence: RecurrenceRule

    @validator("end_time")
    @classmethod
    def validate_end_after_start(cls, value: datetime, values) -> datetime:
        return check_shift_window(values.get("start_time"), value)


class RecurringShiftsOut(BaseModel):
    series_id: str
    count: int
    shifts: list[ShiftOut]


class ClashCheckIn(BaseModel):
    user_id: int
    start_time: datetime
    end_time: datetime
    exclude_shift_id: int | None = None


class ClashCheckOut(BaseModel):
    has_clash: bool
    message: str
    clashes: list[ShiftOut]


class ShiftCancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ShiftCancellationOut(OrmOut):
    id: int
    shift_id: int
    requested_by_user_id: int | None = None
    cancellation_type: str
    reason: str | None = None
    hours_notice: float
    status: str
    reviewed_by_user_id: int | None = None
    reviewed_at: datetime | None = None
    review_note: str | None = None
    created_at: datetime


class ShiftCancelOut(BaseModel):
    shift: ShiftOut
    cancellation: ShiftCancellationOut


class CancellationReviewIn(BaseModel):
    approve: bool
    note: str | None = Field(default=None, max_length=500)


class SeriesCancelIn(BaseModel):
    from_time: datetime | None = None


class SeriesCancelOut(BaseModel):
    series_id: str
    cancelled: int


# Clinical records


class CaseNoteCreate(BaseModel):
    client_id: int
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    category: str = "Progress Note"
    priority: str = "normal"
    tags: list[str] = Field(default_factory=list)
    linked_shift_id: int | None = None


class CaseNoteUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    content: str | None = Field(default=None, min_length=1)
    category: str | None = None
    priority: str | None = None
    tags: list[str] | None = None
    linked_shift_id: int | None = None
    is_archived: bool | None = None


class CaseNoteOut(BaseModel):
    id: int
    client_id: int
    author_user_id: int | None = None
    linked_shift_id: int | None = None
    title: str
    content: str
    category: str
    priority: str
    tags: list[str]
    is_archived: bool
    created_at: datetime
    updated_at: datetime


class MedicationRecordCreate(BaseModel):
    client_id: int
    medication_name: str = Field(min_length=1, max_length=120)
    dosage: str = Field(min_length=1, max_length=80)
    route: str = Field(default="oral", max_length=40)
    status: Literal["administered", "refused", "missed"] = "administered"
    administered_at: datetime | None = None
    notes: str | None = Field(default=None, max_length=500)


class MedicationRecordOut(OrmOut):
    id: int
    client_id: int
    administered_by_user_id: int | None = None
    medication_name: str
    dosage: str
    route: str
    status: str
    administered_at: datetime
    notes: str | None = None


class CarePlanCreate(BaseModel):
    client_id: int
    title: str = Field(min_length=1, max_length=200)
    status: Literal["draft", "active", "archived"] = "draft"
    sections: dict = Field(default_factory=dict)


class CarePlanUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    status: Literal["draft", "active", "archived"] | None = None
    sections: dict | None = None


class CarePlanOut(BaseModel):
    id: int
    client_id: int
    created_by_user_id: int | None = None
    title: str
    status: str
    sections: dict
    updated_at: datetime


class FormField(BaseModel):
    key: str = Field(min_length=1, max_length=60, pattern=r"^[a-z][a-z0-9_]*$")
    label: str = Field(min_length=1, max_length=160)
    type: str = "text"
    required: bool = False
    options: list[str] | None = None


class FormTemplateCreate(BaseModel):
    name: str = Field(min_length=2, max_length=160)
    category: str | None = Field(default=None, max_length=60)
    fields: list[FormField] = Field(min_length=1)


class FormTemplateOut(BaseModel):
    id: int
    name: str
    category: str | None = None
    fields: list[FormField]
    is_active: bool


class FormSubmissionCreate(BaseModel):
    client_id: int | None = None
    answers: dict


class FormSubmissionOut(BaseModel):
    id: int
    template_id: int
    client_id: int | None = None
    submitted_by_user_id: int | None = None
    answers: dict
    created_at: datetime


# Billing


class PriceUpsert(BaseModel):
    time_band: str
    ratio: StaffRatio = "1:1"
    rate: float = Field(gt=0)
    service_type: str | None = None


class PriceOut(OrmOut):
    id: int
    service_type: str
    time_band: str
    ratio: str
    rate: float


class InvoiceLineIn(BaseModel):
    service_date: date
    start_time: str = Field(pattern=_HHMM)
    end_time: str = Field(pattern=_HHMM)
    service_type: str
    ratio: StaffRatio = "1:1"
    description: str | None = Field(default=None, max_length=300)


class InvoicePreviewIn(BaseModel):
    lines: list[InvoiceLineIn] = Field(min_length=1)


class InvoiceCreate(BaseModel):
    client_id: int
    lines: list[InvoiceLineIn] = Field(min_length=1)
    issue_date: date | None = None
    due_date: date | None = None
    participant_name: str | None = Field(default=None, max_length=160)
    notes: str | None = None


class InvoiceLineOut(OrmOut):
    service_date: date
    start_time: str
    end_time: str
    service_type: str
    ratio: str
    time_band: str
    description: str | None = None
    quantity: float
    unit: str
    rate: float
    amount: float


class InvoicePreviewOut(BaseModel):
    lines: list[InvoiceLineOut]
    subtotal: float
    gst_amount: float
    total: float


class InvoiceOut(BaseModel):
    id: int
    client_id: int
    invoice_number: str
    participant_name: str
    issue_date: date
    due_date: date
    status: str
    notes: str | None = None
    subtotal: float
    gst_amount: float
    total: float
    lines: list[InvoiceLineOut] = Field(default_factory=list)


class InvoiceStatusUpdate(BaseModel):
    status: str


# Wages


class PayScaleOut(OrmOut):
    level: int
    pay_point: int
    hourly_rate: float
    effective_date: date | None = None


class PayScaleUpdate(BaseModel):
    hourly_rate: float = Field(gt=0, le=500)


class WageIncreasePreviewIn(BaseModel):
    percentage: float = Field(gt=0, le=50)


class WageIncreaseApplyIn(BaseModel):
    percentage: float = Field(gt=0, le=50)
    effective_date: date
    note: str | None = Field(default=None, max_length=300)


class WageIncreasePreviewRow(BaseModel):
    level: int
    pay_point: int
    current_rate: float
    new_rate: float
    difference: float


class WageIncreaseOut(OrmOut):
    id: int
    percentage: float
    effective_date: date
    scales_updated: int
    applied_by_user_id: int | None = None
    note: str | None = None
    created_at: datetime


# Budgets and timesheets


class BudgetUpsert(BaseModel):
    allocated: float = Field(ge=0)
    plan_start: date | None = None
    plan_end: date | None = None


class BudgetOut(OrmOut):
    client_id: int
    category: str
    allocated: float
    remaining: float
    plan_start: date | None = None
    plan_end: date | None = None


class BudgetTransactionOut(OrmOut):
    id: int
    shift_id: int
    category: str
    time_band: str
    ratio: str
    hours: float
    rate: float
    amount: float
    created_at: datetime


class TimesheetEntryOut(OrmOut):
    shift_id: int
    work_date: date
    scheduled_hours: float
    break_minutes: int
    hours: float
    hourly_rate: float
    gross_pay: float
    payment_method: str


class TimesheetOut(OrmOut):
    id: int
    user_id: int
    period_start: date
    period_end: date
    status: str
    total_hours: float
    gross_pay: float
    approved_by_user_id: int | None = None
    approved_at: datetime | None = None


class TimesheetDetailOut(TimesheetOut):
    entries: list[TimesheetEntryOut] = Field(default_factory=list)


# Audit


class ActivityOut(OrmOut):
    id: int
    user_id: int | None = None
    action: str
    resource_type: str
    resource_id: int | None = None
    description: str | None = None
    request_id: str | None = None
    created_at: datetime

