"""Participant funding budgets and the deduction taken when a shift completes.

Each participant holds one budget row per funding category. Completing a
shift with a participant prices the scheduled hours from the tenant's NDIS
price table and deducts the amount from the matching category. A shift that
cannot be charged (no participant, no budget, not enough funds) is logged
and left alone; completion never fails because of its budget.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .billing import ANY_SERVICE, resolve_rate
from .config import settings
from .models import BudgetTransaction, ParticipantBudget, Shift
from .pricing import BAND_DAYTIME, BAND_EVENING, classify_time_band, round_money
from .services import get_client, log_activity

logger = structlog.get_logger("ndiscare.budgets")

FUNDING_SIL = "SIL"
FUNDING_COMMUNITY_ACCESS = "CommunityAccess"
FUNDING_CAPACITY_BUILDING = "CapacityBuilding"
FUNDING_CATEGORIES = (FUNDING_SIL, FUNDING_COMMUNITY_ACCESS, FUNDING_CAPACITY_BUILDING)
MAX_CHARGEABLE_HOURS = Decimal("24")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime) -> datetime:
    return value + timedelta(minutes=int(settings.LOCAL_UTC_OFFSET_MINUTES))


def shift_hours(shift: Shift) -> Decimal:
    seconds = Decimal((shift.end_time - shift.start_time).total_seconds())
    return round_money(seconds / Decimal(3600))


def shift_time_band(shift: Shift) -> str:
    local_start = to_local(shift.start_time)
    return classify_time_band(local_start.date(), local_start.time(), "")


def funding_category_for(shift: Shift, time_band: str) -> str | None:
    """The shift's own category, else community access for day and evening
    support and SIL for everything else."""
    if shift.funding_category:
        return shift.funding_category if shift.funding_category in FUNDING_CATEGORIES else None
    if time_band in (BAND_DAYTIME, BAND_EVENING):
        return FUNDING_COMMUNITY_ACCESS
    return FUNDING_SIL


def list_budgets(db: Session, tenant_id: int, client_id: int) -> list[ParticipantBudget]:
    return list(
        db.execute(
            select(ParticipantBudget)
            .where(ParticipantBudget.tenant_id == tenant_id, ParticipantBudget.client_id == client_id)
            .order_by(ParticipantBudget.category.asc())
        ).scalars().all()
    )


def get_budget(db: Session, tenant_id: int, client_id: int, category: str) -> ParticipantBudget | None:
    return db.execute(
        select(ParticipantBudget).where(
            ParticipantBudget.tenant_id == tenant_id,
            ParticipantBudget.client_id == client_id,
            ParticipantBudget.category == category,
        )
    ).scalar_one_or_none()


def spent_in_category(db: Session, tenant_id: int, client_id: int, category: str) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(BudgetTransaction.amount), 0)).where(
            BudgetTransaction.tenant_id == tenant_id,
            BudgetTransaction.client_id == client_id,
            BudgetTransaction.category == category,
        )
    ).scalar_one()
    return round_money(total)


def set_budget(
    db: Session,
    tenant_id: int,
    client_id: int,
    category: str,
    allocated,
    plan_start: date | None = None,
    plan_end: date | None = None,
    actor_id: int | None = None,
) -> ParticipantBudget | None:
    """Create or resize a category budget. Remaining funds are the new
    allocation minus what completed shifts have already used."""
    if category not in FUNDING_CATEGORIES:
        raise ValueError("Invalid funding category")
    if not get_client(db, tenant_id, client_id):
        return None
    amount = round_money(allocated)
    if amount < 0:
        raise ValueError("Allocated amount cannot be negative")
    if plan_start and plan_end and plan_end < plan_start:
        raise ValueError("Plan end cannot be before plan start")
    spent = spent_in_category(db, tenant_id, client_id, category)
    if amount < spent:
        raise ValueError(f"Allocation is below the {spent} already used")

    row = get_budget(db, tenant_id, client_id, category)
    if row is None:
        row = ParticipantBudget(tenant_id=tenant_id, client_id=client_id, category=category)
        db.add(row)
    row.allocated = amount
    row.remaining = amount - spent
    row.plan_start = plan_start
    row.plan_end = plan_end
    row.updated_at = utc_now_naive()
    log_activity(db, tenant_id, "budget_set", "client", client_id, actor_id, f"{category}: {amount}")
    db.commit()
    db.refresh(row)
    return row


def list_budget_transactions(db: Session, tenant_id: int, client_id: int) -> list[BudgetTransaction]:
    return list(
        db.execute(
            select(BudgetTransaction)
            .where(BudgetTransaction.tenant_id == tenant_id, BudgetTransaction.client_id == client_id)
            .order_by(BudgetTransaction.created_at.desc(), BudgetTransaction.id.desc())
        ).scalars().all()
    )


def deduct_for_completed_shift(db: Session, shift: Shift) -> BudgetTransaction | None:
    """Charge a completed shift to its participant's budget.

    Runs inside the completion transaction and only flushes.
    """
    log = logger.bind(tenant_id=shift.tenant_id, shift_id=shift.id)
    if shift.client_id is None:
        return None
    existing = db.execute(
        select(BudgetTransaction).where(
            BudgetTransaction.tenant_id == shift.tenant_id,
            BudgetTransaction.shift_id == shift.id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    hours = shift_hours(shift)
    if hours <= 0 or hours > MAX_CHARGEABLE_HOURS:
        log.warning("budget_deduction_skipped", reason="duration out of range", hours=str(hours))
        return None
    band = shift_time_band(shift)
    category = funding_category_for(shift, band)
    if category is None:
        log.warning("budget_deduction_skipped", reason="unknown funding category", category=shift.funding_category)
        return None
    budget = get_budget(db, shift.tenant_id, shift.client_id, category)
    if budget is None:
        log.info("budget_deduction_skipped", reason="no budget", category=category)
        return None

    ratio = shift.staff_ratio or "1:1"
    rate = resolve_rate(db, shift.tenant_id, ANY_SERVICE, band, ratio)
    if rate <= 0:
        log.warning("budget_deduction_skipped", reason="no rate", time_band=band, ratio=ratio)
        return None
    amount = round_money(hours * rate)
    remaining = round_money(budget.remaining)
    if remaining < amount:
        log.warning(
            "budget_insufficient_funds",
            category=category,
            remaining=str(remaining),
            required=str(amount),
        )
        return None

    budget.remaining = remaining - amount
    budget.updated_at = utc_now_naive()
    row = BudgetTransaction(
        tenant_id=shift.tenant_id,
        client_id=shift.client_id,
        shift_id=shift.id,
        category=category,
        time_band=band,
        ratio=ratio,
        hours=hours,
        rate=rate,
        amount=amount,
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.flush()
    log.info("budget_deducted", category=category, amount=str(amount), remaining=str(budget.remaining))
    return row
