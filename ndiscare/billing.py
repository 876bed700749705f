from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import settings
from .models import Invoice, InvoiceLine, NdisPrice, Tenant
from .pricing import (
    DEFAULT_RATES,
    SERVICE_TYPES,
    STAFF_RATIOS,
    TIME_BANDS,
    default_rate,
    gst_for,
    parse_hhmm,
    price_line,
    public_holidays,
    round_money,
)
from .services import get_client, log_activity

logger = structlog.get_logger("ndiscare.billing")

ANY_SERVICE = "*"
INVOICE_STATUSES = {"draft", "issued", "paid", "void"}
ALLOWED_INVOICE_STATUS_TRANSITIONS = {
    "draft": {"issued", "void"},
    "issued": {"paid", "void"},
    "paid": set(),
    "void": set(),
}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seed_default_prices(db: Session, tenant_id: int) -> int:
    existing = {
        (row.service_type, row.time_band, row.ratio)
        for row in db.execute(select(NdisPrice).where(NdisPrice.tenant_id == tenant_id)).scalars()
    }
    created = 0
    for (band, ratio), rate in DEFAULT_RATES.items():
        if (ANY_SERVICE, band, ratio) in existing:
            continue
        db.add(NdisPrice(tenant_id=tenant_id, service_type=ANY_SERVICE, time_band=band, ratio=ratio, rate=rate))
        created += 1
    db.flush()
    return created


def list_prices(db: Session, tenant_id: int) -> list[NdisPrice]:
    return list(
        db.execute(
            select(NdisPrice)
            .where(NdisPrice.tenant_id == tenant_id)
            .order_by(NdisPrice.service_type.asc(), NdisPrice.time_band.asc(), NdisPrice.ratio.asc())
        ).scalars().all()
    )


def upsert_price(
    db: Session,
    tenant_id: int,
    time_band: str,
    ratio: str,
    rate,
    service_type: str | None = None,
) -> NdisPrice:
    normalized_service = (service_type or "").strip() or ANY_SERVICE
    if normalized_service != ANY_SERVICE and normalized_service not in SERVICE_TYPES:
        raise ValueError("Invalid service type")
    if time_band not in TIME_BANDS:
        raise ValueError("Invalid time band")
    if ratio not in STAFF_RATIOS:
        raise ValueError("Invalid staff ratio")
    amount = round_money(rate)
    if amount <= 0:
        raise ValueError("Rate must be positive")

    row = db.execute(
        select(NdisPrice).where(
            NdisPrice.tenant_id == tenant_id,
            NdisPrice.service_type == normalized_service,
            NdisPrice.time_band == time_band,
            NdisPrice.ratio == ratio,
        )
    ).scalar_one_or_none()
    if row is None:
        row = NdisPrice(tenant_id=tenant_id, service_type=normalized_service, time_band=time_band, ratio=ratio)
        db.add(row)
    row.rate = amount
    row.updated_at = utc_now_naive()
    db.commit()
    db.refresh(row)
    return row


def resolve_rate(db: Session, tenant_id: int, service_type: str, time_band: str, ratio: str) -> Decimal:
    """Tenant price for the exact service, then any service, then the 1:1
    row, then the built-in table."""
    candidates = (
        (service_type, time_band, ratio),
        (ANY_SERVICE, time_band, ratio),
        (service_type, time_band, "1:1"),
        (ANY_SERVICE, time_band, "1:1"),
    )
    rows = db.execute(
        select(NdisPrice).where(
            NdisPrice.tenant_id == tenant_id,
            NdisPrice.time_band == time_band,
            NdisPrice.service_type.in_({service_type, ANY_SERVICE}),
        )
    ).scalars().all()
    by_key = {(r.service_type, r.time_band, r.ratio): r.rate for r in rows}
    for key in candidates:
        if key in by_key:
            return round_money(by_key[key])
    return default_rate(time_band, ratio)


def price_invoice_lines(db: Session, tenant_id: int, lines: list[dict]) -> list[dict]:
    if not lines:
        raise ValueError("Invoice needs at least one line")
    holidays = public_holidays()
    out = []
    for position, line in enumerate(lines):
        service_type = line["service_type"]
        if service_type not in SERVICE_TYPES:
            raise ValueError(f"Invalid service type: {service_type}")
        ratio = line.get("ratio") or "1:1"
        if ratio not in STAFF_RATIOS:
            raise ValueError(f"Invalid staff ratio: {ratio}")
        start = parse_hhmm(line["start_time"])
        end = parse_hhmm(line["end_time"])
        priced = price_line(
            line["service_date"],
            start,
            end,
            service_type,
            lambda band: resolve_rate(db, tenant_id, service_type, band, ratio),
            holidays=holidays,
        )
        out.append(
            {
                "position": position,
                "service_date": line["service_date"],
                "start_time": start.strftime("%H:%M"),
                "end_time": end.strftime("%H:%M"),
                "service_type": service_type,
                "ratio": ratio,
                "description": line.get("description"),
                "time_band": priced.time_band,
                "quantity": priced.quantity,
                "unit": priced.unit,
                "rate": priced.rate,
                "amount": priced.amount,
            }
        )
    return out


def _totals(priced_lines: list[dict]) -> tuple[Decimal, Decimal, Decimal]:
    subtotal = round_money(sum((line["amount"] for line in priced_lines), Decimal("0")))
    gst = gst_for(subtotal)
    return subtotal, gst, subtotal + gst


def preview_invoice(db: Session, tenant_id: int, lines: list[dict]) -> dict:
    priced = price_invoice_lines(db, tenant_id, lines)
    subtotal, gst, total = _totals(priced)
    return {"lines": priced, "subtotal": subtotal, "gst_amount": gst, "total": total}


def _next_invoice_number(db: Session, tenant: Tenant, issue_date: date) -> str:
    prefix = f"INV-{issue_date.strftime('%Y%m')}-{tenant.slug.upper()}-"
    count = db.execute(
        select(func.count(Invoice.id)).where(
            Invoice.tenant_id == tenant.id,
            Invoice.invoice_number.like(f"{prefix}%"),
        )
    ).scalar_one()
    return f"{prefix}{int(count) + 1:04d}"


def create_invoice(
    db: Session,
    tenant: Tenant,
    client_id: int,
    lines: list[dict],
    issue_date: date | None = None,
    due_date: date | None = None,
    participant_name: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> Invoice | None:
    client = get_client(db, tenant.id, client_id)
    if not client:
        return None
    issued = issue_date or utc_now_naive().date()
    due = due_date or issued + timedelta(days=max(0, int(settings.INVOICE_DUE_DAYS)))
    if due < issued:
        raise ValueError("Due date cannot be before the issue date")

    priced = price_invoice_lines(db, tenant.id, lines)
    subtotal, gst, total = _totals(priced)

    invoice = Invoice(
        tenant_id=tenant.id,
        client_id=client.id,
        invoice_number=_next_invoice_number(db, tenant, issued),
        participant_name=(participant_name or "").strip() or f"{client.first_name} {client.last_name}",
        issue_date=issued,
        due_date=due,
        status="draft",
        notes=(notes or "").strip() or None,
        subtotal=subtotal,
        gst_amount=gst,
        total=total,
        created_by_user_id=actor_id,
    )
    db.add(invoice)
    db.flush()
    for line in priced:
        db.add(InvoiceLine(tenant_id=tenant.id, invoice_id=invoice.id, **line))
    log_activity(db, tenant.id, "invoice_created", "invoice", invoice.id, actor_id, invoice.invoice_number)
    db.commit()
    db.refresh(invoice)
    logger.info(
        "invoice_created",
        tenant_id=tenant.id,
        invoice_number=invoice.invoice_number,
        lines=len(priced),
        total=str(total),
    )
    return invoice


def list_invoices(
    db: Session, tenant_id: int, client_id: int | None = None, status: str | None = None
) -> list[Invoice]:
    q = select(Invoice).where(Invoice.tenant_id == tenant_id)
    if client_id is not None:
        q = q.where(Invoice.client_id == client_id)
    if status:
        q = q.where(Invoice.status == status)
    return list(db.execute(q.order_by(Invoice.issue_date.desc(), Invoice.id.desc())).scalars().all())


def get_invoice(db: Session, tenant_id: int, invoice_id: int) -> Invoice | None:
    return db.execute(
        select(Invoice).where(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
    ).scalar_one_or_none()


def list_invoice_lines(db: Session, tenant_id: int, invoice_id: int) -> list[InvoiceLine]:
    return list(
        db.execute(
            select(InvoiceLine)
            .where(InvoiceLine.tenant_id == tenant_id, InvoiceLine.invoice_id == invoice_id)
            .order_by(InvoiceLine.position.asc())
        ).scalars().all()
    )


def update_invoice_status(
    db: Session, tenant_id: int, invoice_id: int, new_status: str, actor_id: int | None = None
) -> Invoice | None:
    invoice = get_invoice(db, tenant_id, invoice_id)
    if not invoice:
        return None
    target = (new_status or "").strip().lower()
    if target not in INVOICE_STATUSES:
        raise ValueError("Invalid invoice status")
    if target == invoice.status:
        return invoice
    if target not in ALLOWED_INVOICE_STATUS_TRANSITIONS.get(invoice.status, set()):
        raise ValueError(f"Invalid invoice status transition: {invoice.status} -> {target}")
    log_activity(
        db, tenant_id, "invoice_status_changed", "invoice", invoice.id, actor_id, f"{invoice.status} -> {target}"
    )
    invoice.status = target
    invoice.updated_at = utc_now_naive()
    db.commit()
    db.refresh(invoice)
    return invoice
