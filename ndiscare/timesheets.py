"""Fortnightly timesheets built from completed shifts.

A completed shift becomes one timesheet entry in the worker's pay period.
A shift ended before its scheduled finish is paid for the time actually
worked; a shift ended on time or late is paid as rostered. The unpaid break
is taken off before pricing at the worker's award rate.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .budgets import to_local
from .config import settings
from .models import Shift, Timesheet, TimesheetEntry
from .pricing import round_money
from .services import get_user, log_activity
from .wages import DEFAULT_PAY_SCALES, get_pay_scale

logger = structlog.get_logger("ndiscare.timesheets")

PAY_PERIOD_DAYS = 14
TIMESHEET_STATUSES = {"open", "approved"}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def break_minutes_for(worked_minutes: int) -> int:
    if worked_minutes <= 240:
        return 0
    if worked_minutes > 480:
        return 60
    if worked_minutes > 360:
        return 45
    return 30


def pay_period_for(work_date: date) -> tuple[date, date]:
    """Fortnight containing ``work_date``, counted from PAY_PERIOD_ANCHOR
    (a Monday)."""
    anchor = date.fromisoformat(settings.PAY_PERIOD_ANCHOR)
    offset = (work_date - anchor).days // PAY_PERIOD_DAYS
    start = anchor + timedelta(days=offset * PAY_PERIOD_DAYS)
    return start, start + timedelta(days=PAY_PERIOD_DAYS - 1)


def paid_minutes(shift: Shift, finished_at: datetime) -> tuple[int, str]:
    scheduled = int((shift.end_time - shift.start_time).total_seconds() // 60)
    if finished_at < shift.end_time:
        actual = int((finished_at - shift.start_time).total_seconds() // 60)
        return max(0, actual), "actual"
    return scheduled, "scheduled"


def hourly_rate_for(db: Session, tenant_id: int, level: int, pay_point: int) -> Decimal | None:
    row = get_pay_scale(db, tenant_id, level, pay_point)
    if row is not None:
        return round_money(row.hourly_rate)
    return DEFAULT_PAY_SCALES.get((level, pay_point))


def _get_or_open_timesheet(db: Session, tenant_id: int, user_id: int, work_date: date) -> Timesheet:
    period_start, period_end = pay_period_for(work_date)
    row = db.execute(
        select(Timesheet).where(
            Timesheet.tenant_id == tenant_id,
            Timesheet.user_id == user_id,
            Timesheet.period_start == period_start,
        )
    ).scalar_one_or_none()
    if row is None:
        row = Timesheet(
            tenant_id=tenant_id,
            user_id=user_id,
            period_start=period_start,
            period_end=period_end,
            status="open",
            total_hours=Decimal("0"),
            gross_pay=Decimal("0"),
            created_at=utc_now_naive(),
        )
        db.add(row)
        db.flush()
    return row


def record_completed_shift(db: Session, shift: Shift, finished_at: datetime) -> TimesheetEntry | None:
    """Add a completed shift to its worker's timesheet.

    Runs inside the completion transaction and only flushes.
    """
    log = logger.bind(tenant_id=shift.tenant_id, shift_id=shift.id)
    if shift.user_id is None:
        return None
    existing = db.execute(
        select(TimesheetEntry).where(
            TimesheetEntry.tenant_id == shift.tenant_id,
            TimesheetEntry.shift_id == shift.id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    user = get_user(db, shift.tenant_id, shift.user_id)
    rate = hourly_rate_for(db, shift.tenant_id, user.pay_level, user.pay_point) if user else None
    if rate is None:
        log.warning("timesheet_entry_skipped", reason="no pay scale", user_id=shift.user_id)
        return None

    work_date = to_local(shift.start_time).date()
    timesheet = _get_or_open_timesheet(db, shift.tenant_id, shift.user_id, work_date)
    if timesheet.status != "open":
        log.warning("timesheet_entry_skipped", reason="timesheet approved", timesheet_id=timesheet.id)
        return None

    minutes, method = paid_minutes(shift, finished_at)
    unpaid_break = break_minutes_for(minutes)
    hours = round_money(Decimal(max(0, minutes - unpaid_break)) / Decimal(60))
    scheduled_hours = round_money(
        Decimal((shift.end_time - shift.start_time).total_seconds()) / Decimal(3600)
    )
    gross = round_money(hours * rate)

    entry = TimesheetEntry(
        tenant_id=shift.tenant_id,
        timesheet_id=timesheet.id,
        shift_id=shift.id,
        work_date=work_date,
        scheduled_hours=scheduled_hours,
        break_minutes=unpaid_break,
        hours=hours,
        hourly_rate=rate,
        gross_pay=gross,
        payment_method=method,
    )
    db.add(entry)
    timesheet.total_hours = round_money(timesheet.total_hours) + hours
    timesheet.gross_pay = round_money(timesheet.gross_pay) + gross
    db.flush()
    log.info(
        "timesheet_entry_recorded",
        timesheet_id=timesheet.id,
        hours=str(hours),
        payment_method=method,
    )
    return entry


def list_timesheets(
    db: Session,
    tenant_id: int,
    user_id: int | None = None,
    status: str | None = None,
) -> list[Timesheet]:
    q = select(Timesheet).where(Timesheet.tenant_id == tenant_id)
    if user_id is not None:
        q = q.where(Timesheet.user_id == user_id)
    if status:
        q = q.where(Timesheet.status == status)
    return list(db.execute(q.order_by(Timesheet.period_start.desc(), Timesheet.id.asc())).scalars().all())


def get_timesheet(db: Session, tenant_id: int, timesheet_id: int) -> Timesheet | None:
    return db.execute(
        select(Timesheet).where(Timesheet.id == timesheet_id, Timesheet.tenant_id == tenant_id)
    ).scalar_one_or_none()


def list_timesheet_entries(db: Session, tenant_id: int, timesheet_id: int) -> list[TimesheetEntry]:
    return list(
        db.execute(
            select(TimesheetEntry)
            .where(TimesheetEntry.tenant_id == tenant_id, TimesheetEntry.timesheet_id == timesheet_id)
            .order_by(TimesheetEntry.work_date.asc(), TimesheetEntry.id.asc())
        ).scalars().all()
    )


def approve_timesheet(
    db: Session, tenant_id: int, timesheet_id: int, actor_id: int | None = None
) -> Timesheet | None:
    row = get_timesheet(db, tenant_id, timesheet_id)
    if not row:
        return None
    if row.status != "open":
        raise ValueError("Timesheet was already approved")
    row.status = "approved"
    row.approved_by_user_id = actor_id
    row.approved_at = utc_now_naive()
    log_activity(db, tenant_id, "timesheet_approved", "timesheet", row.id, actor_id)
    db.commit()
    db.refresh(row)
    return row
