from datetime import date, datetime, timezone
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import PayScale, WageIncrease
from .pricing import round_money

logger = structlog.get_logger("ndiscare.wages")

# ScHADS award, levels 1-4 with four pay points each.
DEFAULT_PAY_SCALES = {
    (1, 1): Decimal("25.41"),
    (1, 2): Decimal("26.15"),
    (1, 3): Decimal("26.88"),
    (1, 4): Decimal("27.62"),
    (2, 1): Decimal("28.35"),
    (2, 2): Decimal("29.09"),
    (2, 3): Decimal("29.82"),
    (2, 4): Decimal("30.56"),
    (3, 1): Decimal("31.29"),
    (3, 2): Decimal("32.03"),
    (3, 3): Decimal("32.76"),
    (3, 4): Decimal("33.50"),
    (4, 1): Decimal("34.31"),
    (4, 2): Decimal("34.31"),
    (4, 3): Decimal("34.31"),
    (4, 4): Decimal("34.31"),
}
MAX_WAGE_INCREASE_PCT = Decimal("50")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seed_default_pay_scales(db: Session, tenant_id: int) -> int:
    existing = {
        (row.level, row.pay_point)
        for row in db.execute(select(PayScale).where(PayScale.tenant_id == tenant_id)).scalars()
    }
    created = 0
    for (level, pay_point), rate in DEFAULT_PAY_SCALES.items():
        if (level, pay_point) in existing:
            continue
        db.add(PayScale(tenant_id=tenant_id, level=level, pay_point=pay_point, hourly_rate=rate))
        created += 1
    db.flush()
    return created


def list_pay_scales(db: Session, tenant_id: int) -> list[PayScale]:
    return list(
        db.execute(
            select(PayScale)
            .where(PayScale.tenant_id == tenant_id)
            .order_by(PayScale.level.asc(), PayScale.pay_point.asc())
        ).scalars().all()
    )


def get_pay_scale(db: Session, tenant_id: int, level: int, pay_point: int) -> PayScale | None:
    return db.execute(
        select(PayScale).where(
            PayScale.tenant_id == tenant_id,
            PayScale.level == level,
            PayScale.pay_point == pay_point,
        )
    ).scalar_one_or_none()


def set_pay_scale_rate(
    db: Session, tenant_id: int, level: int, pay_point: int, hourly_rate
) -> PayScale | None:
    if (level, pay_point) not in DEFAULT_PAY_SCALES:
        return None
    rate = round_money(hourly_rate)
    if rate <= 0:
        raise ValueError("Hourly rate must be positive")
    row = get_pay_scale(db, tenant_id, level, pay_point)
    if row is None:
        row = PayScale(tenant_id=tenant_id, level=level, pay_point=pay_point, hourly_rate=rate)
        db.add(row)
    row.hourly_rate = rate
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def reset_pay_scale(db: Session, tenant_id: int, level: int, pay_point: int) -> PayScale | None:
    default = DEFAULT_PAY_SCALES.get((level, pay_point))
    if default is None:
        return None
    return set_pay_scale_rate(db, tenant_id, level, pay_point, default)


def _validate_percentage(percentage) -> Decimal:
    pct = Decimal(str(percentage))
    if pct <= 0 or pct > MAX_WAGE_INCREASE_PCT:
        raise ValueError(f"Percentage must be greater than 0 and at most {MAX_WAGE_INCREASE_PCT}")
    return pct


def preview_wage_increase(db: Session, tenant_id: int, percentage) -> list[dict]:
    pct = _validate_percentage(percentage)
    factor = Decimal("1") + pct / Decimal("100")
    out = []
    for row in list_pay_scales(db, tenant_id):
        current = round_money(row.hourly_rate)
        new_rate = round_money(current * factor)
        out.append(
            {
                "level": row.level,
                "pay_point": row.pay_point,
                "current_rate": current,
                "new_rate": new_rate,
                "difference": new_rate - current,
            }
        )
    return out


def apply_wage_increase(
    db: Session,
    tenant_id: int,
    percentage,
    effective_date: date,
    actor_id: int | None = None,
    note: str | None = None,
) -> WageIncrease:
    pct = _validate_percentage(percentage)
    factor = Decimal("1") + pct / Decimal("100")
    rows = list_pay_scales(db, tenant_id)
    if not rows:
        raise ValueError("No pay scales configured")
    now = utc_now_naive()
    for row in rows:
        row.hourly_rate = round_money(round_money(row.hourly_rate) * factor)
        row.effective_date = effective_date
        row.updated_at = now
    increase = WageIncrease(
        tenant_id=tenant_id,
        percentage=pct,
        effective_date=effective_date,
        scales_updated=len(rows),
        applied_by_user_id=actor_id,
        note=(note or "").strip() or None,
        created_at=now,
    )
    db.add(increase)
    db.commit()
    db.refresh(increase)
    logger.info(
        "wage_increase_applied",
        tenant_id=tenant_id,
        percentage=str(pct),
        effective_date=effective_date.isoformat(),
        scales_updated=len(rows),
    )
    return increase


def list_wage_increases(db: Session, tenant_id: int) -> list[WageIncrease]:
    return list(
        db.execute(
            select(WageIncrease)
            .where(WageIncrease.tenant_id == tenant_id)
            .order_by(WageIncrease.created_at.desc(), WageIncrease.id.desc())
        ).scalars().all()
    )
