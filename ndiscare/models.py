from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _tenant_fk(columns: list[str], parent: str, name: str, ondelete: str | None = None):
    # (child_id, tenant_id) -> (parent.id, parent.tenant_id)
    return ForeignKeyConstraint(
        columns,
        [f"{parent}.id", f"{parent}.tenant_id"],
        name=name,
        ondelete=ondelete,
    )


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
        UniqueConstraint("id", "tenant_id", name="uq_users_id_tenant"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    username: Mapped[str] = mapped_column(String(80), index=True)
    email: Mapped[str | None] = mapped_column(String(160), nullable=True)
    full_name: Mapped[str] = mapped_column(String(160))
    password_hash: Mapped[str] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(32), default="SupportWorker")
    employment_type: Mapped[str] = mapped_column(String(20), default="casual")
    pay_level: Mapped[int] = mapped_column(Integer, default=1)
    pay_point: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class AuthSession(Base):
    __tablename__ = "auth_sessions"
    __table_args__ = (
        _tenant_fk(["user_id", "tenant_id"], "users", "fk_auth_sessions_user_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (
        UniqueConstraint("id", "tenant_id", name="uq_clients_id_tenant"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    first_name: Mapped[str] = mapped_column(String(80))
    last_name: Mapped[str] = mapped_column(String(80), index=True)
    ndis_number: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    emergency_contact: Mapped[str | None] = mapped_column(String(255), nullable=True)
    care_level: Mapped[str | None] = mapped_column(String(40), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Shift(Base):
    __tablename__ = "shifts"
    __table_args__ = (
        UniqueConstraint("id", "tenant_id", name="uq_shifts_id_tenant"),
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_shifts_client_tenant", "CASCADE"),
        # Deleting a user un-assigns in the service layer: a composite SET NULL
        # would also null tenant_id.
        _tenant_fk(["user_id", "tenant_id"], "users", "fk_shifts_user_tenant"),
        Index("ix_shifts_client_tenant", "client_id", "tenant_id"),
        Index("ix_shifts_user_tenant", "user_id", "tenant_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(200))
    start_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(32), default="unassigned", index=True)
    series_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    staff_ratio: Mapped[str] = mapped_column(String(8), default="1:1")
    funding_category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    start_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class ShiftCancellation(Base):
    __tablename__ = "shift_cancellations"
    __table_args__ = (
        _tenant_fk(["shift_id", "tenant_id"], "shifts", "fk_shift_cancellations_shift_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    shift_id: Mapped[int] = mapped_column(Integer, index=True)
    requested_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancellation_type: Mapped[str] = mapped_column(String(20))
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    hours_notice: Mapped[float] = mapped_column(Numeric(8, 2), default=0)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    reviewed_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class CaseNote(Base):
    __tablename__ = "case_notes"
    __table_args__ = (
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_case_notes_client_tenant", "CASCADE"),
        Index("ix_case_notes_client_tenant", "client_id", "tenant_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    client_id: Mapped[int] = mapped_column(Integer)
    author_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    linked_shift_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(200))
    content: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(40), default="Progress Note", index=True)
    priority: Mapped[str] = mapped_column(String(20), default="normal")
    tags_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class MedicationRecord(Base):
    __tablename__ = "medication_records"
    __table_args__ = (
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_medication_records_client_tenant", "CASCADE"),
        Index("ix_medication_records_client_tenant", "client_id", "tenant_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    client_id: Mapped[int] = mapped_column(Integer)
    administered_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    medication_name: Mapped[str] = mapped_column(String(120))
    dosage: Mapped[str] = mapped_column(String(80))
    route: Mapped[str] = mapped_column(String(40), default="oral")
    status: Mapped[str] = mapped_column(String(20), default="administered", index=True)
    administered_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class CarePlan(Base):
    __tablename__ = "care_plans"
    __table_args__ = (
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_care_plans_client_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    client_id: Mapped[int] = mapped_column(Integer, index=True)
    created_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(200))
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    sections_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class NdisPrice(Base):
    __tablename__ = "ndis_prices"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "service_type", "time_band", "ratio", name="uq_ndis_prices_key"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    service_type: Mapped[str] = mapped_column(String(60), default="*")
    time_band: Mapped[str] = mapped_column(String(30))
    ratio: Mapped[str] = mapped_column(String(8), default="1:1")
    rate: Mapped[float] = mapped_column(Numeric(10, 2))
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("id", "tenant_id", name="uq_invoices_id_tenant"),
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_invoices_client_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    client_id: Mapped[int] = mapped_column(Integer, index=True)
    invoice_number: Mapped[str] = mapped_column(String(60))
    participant_name: Mapped[str] = mapped_column(String(160))
    issue_date: Mapped[date] = mapped_column(Date)
    due_date: Mapped[date] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    subtotal: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    gst_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    total: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    created_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"
    __table_args__ = (
        _tenant_fk(["invoice_id", "tenant_id"], "invoices", "fk_invoice_lines_invoice_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    invoice_id: Mapped[int] = mapped_column(Integer, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    service_date: Mapped[date] = mapped_column(Date)
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))
    service_type: Mapped[str] = mapped_column(String(60))
    ratio: Mapped[str] = mapped_column(String(8), default="1:1")
    time_band: Mapped[str] = mapped_column(String(30))
    description: Mapped[str | None] = mapped_column(String(300), nullable=True)
    quantity: Mapped[float] = mapped_column(Numeric(8, 2))
    unit: Mapped[str] = mapped_column(String(10), default="hour")
    rate: Mapped[float] = mapped_column(Numeric(10, 2))
    amount: Mapped[float] = mapped_column(Numeric(12, 2))


class PayScale(Base):
    __tablename__ = "pay_scales"
    __table_args__ = (
        UniqueConstraint("tenant_id", "level", "pay_point", name="uq_pay_scales_level_point"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    level: Mapped[int] = mapped_column(Integer)
    pay_point: Mapped[int] = mapped_column(Integer)
    hourly_rate: Mapped[float] = mapped_column(Numeric(8, 2))
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class WageIncrease(Base):
    __tablename__ = "wage_increases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    percentage: Mapped[float] = mapped_column(Numeric(5, 2))
    effective_date: Mapped[date] = mapped_column(Date)
    scales_updated: Mapped[int] = mapped_column(Integer, default=0)
    applied_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    note: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class ParticipantBudget(Base):
    __tablename__ = "participant_budgets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "client_id", "category", name="uq_participant_budgets_client_category"),
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_participant_budgets_client_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    client_id: Mapped[int] = mapped_column(Integer, index=True)
    category: Mapped[str] = mapped_column(String(40))
    allocated: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    remaining: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    plan_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    plan_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class BudgetTransaction(Base):
    __tablename__ = "budget_transactions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shift_id", name="uq_budget_transactions_shift"),
        _tenant_fk(["shift_id", "tenant_id"], "shifts", "fk_budget_transactions_shift_tenant", "CASCADE"),
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_budget_transactions_client_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    client_id: Mapped[int] = mapped_column(Integer, index=True)
    shift_id: Mapped[int] = mapped_column(Integer, index=True)
    category: Mapped[str] = mapped_column(String(40))
    time_band: Mapped[str] = mapped_column(String(30))
    ratio: Mapped[str] = mapped_column(String(8), default="1:1")
    hours: Mapped[float] = mapped_column(Numeric(8, 2))
    rate: Mapped[float] = mapped_column(Numeric(10, 2))
    amount: Mapped[float] = mapped_column(Numeric(12, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class Timesheet(Base):
    __tablename__ = "timesheets"
    __table_args__ = (
        UniqueConstraint("id", "tenant_id", name="uq_timesheets_id_tenant"),
        UniqueConstraint("tenant_id", "user_id", "period_start", name="uq_timesheets_user_period"),
        _tenant_fk(["user_id", "tenant_id"], "users", "fk_timesheets_user_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    period_start: Mapped[date] = mapped_column(Date)
    period_end: Mapped[date] = mapped_column(Date)
    status: Mapped[str] = mapped_column(String(20), default="open", index=True)
    total_hours: Mapped[float] = mapped_column(Numeric(8, 2), default=0)
    gross_pay: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    approved_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class TimesheetEntry(Base):
    __tablename__ = "timesheet_entries"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shift_id", name="uq_timesheet_entries_shift"),
        _tenant_fk(["timesheet_id", "tenant_id"], "timesheets", "fk_timesheet_entries_timesheet_tenant", "CASCADE"),
        _tenant_fk(["shift_id", "tenant_id"], "shifts", "fk_timesheet_entries_shift_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    timesheet_id: Mapped[int] = mapped_column(Integer, index=True)
    shift_id: Mapped[int] = mapped_column(Integer, index=True)
    work_date: Mapped[date] = mapped_column(Date)
    scheduled_hours: Mapped[float] = mapped_column(Numeric(8, 2))
    break_minutes: Mapped[int] = mapped_column(Integer, default=0)
    hours: Mapped[float] = mapped_column(Numeric(8, 2))
    hourly_rate: Mapped[float] = mapped_column(Numeric(8, 2))
    gross_pay: Mapped[float] = mapped_column(Numeric(12, 2))
    # "actual" when the shift ended early, otherwise "scheduled".
    payment_method: Mapped[str] = mapped_column(String(20), default="scheduled")


class FormTemplate(Base):
    __tablename__ = "form_templates"
    __table_args__ = (
        UniqueConstraint("id", "tenant_id", name="uq_form_templates_id_tenant"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(160))
    category: Mapped[str | None] = mapped_column(String(60), nullable=True)
    fields_json: Mapped[str] = mapped_column(Text, default="[]")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class FormSubmission(Base):
    __tablename__ = "form_submissions"
    __table_args__ = (
        _tenant_fk(["template_id", "tenant_id"], "form_templates", "fk_form_submissions_template_tenant", "CASCADE"),
        _tenant_fk(["client_id", "tenant_id"], "clients", "fk_form_submissions_client_tenant", "CASCADE"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    template_id: Mapped[int] = mapped_column(Integer, index=True)
    client_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    submitted_by_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    answers_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(60), index=True)
    resource_type: Mapped[str] = mapped_column(String(40))
    resource_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
