from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .authn import (
    MANAGER_ROLES,
    ROLE_ADMIN,
    ROLE_COORDINATOR,
    AuthContext,
    get_auth_context,
    require_admin,
    require_role,
)
from .billing import (
    create_invoice,
    get_invoice,
    list_invoice_lines,
    list_invoices,
    list_prices,
    preview_invoice,
    upsert_price,
    update_invoice_status,
)
from .budgets import list_budget_transactions, list_budgets, set_budget
from .db import get_db
from .models import Invoice, Timesheet
from .schemas import (
    BudgetOut,
    BudgetTransactionOut,
    BudgetUpsert,
    InvoiceCreate,
    InvoiceLineOut,
    InvoiceOut,
    InvoicePreviewIn,
    InvoicePreviewOut,
    InvoiceStatusUpdate,
    PayScaleOut,
    PayScaleUpdate,
    PriceOut,
    PriceUpsert,
    TimesheetDetailOut,
    TimesheetEntryOut,
    TimesheetOut,
    WageIncreaseApplyIn,
    WageIncreaseOut,
    WageIncreasePreviewIn,
    WageIncreasePreviewRow,
)
from .services import get_client
from .timesheets import approve_timesheet, get_timesheet, list_timesheet_entries, list_timesheets
from .wages import (
    apply_wage_increase,
    list_pay_scales,
    list_wage_increases,
    preview_wage_increase,
    reset_pay_scale,
    set_pay_scale_rate,
)

router = APIRouter(prefix="/api")

require_billing = require_role(ROLE_ADMIN, ROLE_COORDINATOR)


def _to_invoice_out(db: Session, invoice: Invoice, with_lines: bool = True) -> InvoiceOut:
    lines = list_invoice_lines(db, invoice.tenant_id, invoice.id) if with_lines else []
    return InvoiceOut(
        id=invoice.id,
        client_id=invoice.client_id,
        invoice_number=invoice.invoice_number,
        participant_name=invoice.participant_name,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        status=invoice.status,
        notes=invoice.notes,
        subtotal=float(invoice.subtotal),
        gst_amount=float(invoice.gst_amount),
        total=float(invoice.total),
        lines=[InvoiceLineOut.model_validate(line) for line in lines],
    )


# NDIS price table


@router.get("/ndis-prices", response_model=List[PriceOut])
def get_prices(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    return list_prices(db, ctx.tenant_id)


@router.put("/ndis-prices", response_model=PriceOut)
def put_price(
    payload: PriceUpsert,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    try:
        return upsert_price(
            db,
            ctx.tenant_id,
            time_band=payload.time_band,
            ratio=payload.ratio,
            rate=payload.rate,
            service_type=payload.service_type,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


# Invoices


@router.post("/invoices/preview", response_model=InvoicePreviewOut)
def post_invoice_preview(
    payload: InvoicePreviewIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    try:
        result = preview_invoice(db, ctx.tenant_id, [line.model_dump() for line in payload.lines])
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return InvoicePreviewOut(
        lines=[InvoiceLineOut(**line) for line in result["lines"]],
        subtotal=float(result["subtotal"]),
        gst_amount=float(result["gst_amount"]),
        total=float(result["total"]),
    )


@router.post("/invoices", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def add_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    try:
        invoice = create_invoice(
            db,
            ctx.tenant,
            client_id=payload.client_id,
            lines=[line.model_dump() for line in payload.lines],
            issue_date=payload.issue_date,
            due_date=payload.due_date,
            participant_name=payload.participant_name,
            notes=payload.notes,
            actor_id=ctx.user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return _to_invoice_out(db, invoice)


@router.get("/invoices", response_model=List[InvoiceOut])
def get_invoices(
    client_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    rows = list_invoices(db, ctx.tenant_id, client_id=client_id, status=status_filter)
    return [_to_invoice_out(db, row, with_lines=False) for row in rows]


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice_detail(
    invoice_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    invoice = get_invoice(db, ctx.tenant_id, invoice_id)
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return _to_invoice_out(db, invoice)


@router.patch("/invoices/{invoice_id}/status", response_model=InvoiceOut)
def patch_invoice_status(
    invoice_id: int,
    payload: InvoiceStatusUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    try:
        invoice = update_invoice_status(db, ctx.tenant_id, invoice_id, payload.status, actor_id=ctx.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return _to_invoice_out(db, invoice)


# Pay scales and wage increases


@router.get("/pay-scales", response_model=List[PayScaleOut])
def get_pay_scales(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    return list_pay_scales(db, ctx.tenant_id)


@router.put("/pay-scales/{level}/{pay_point}", response_model=PayScaleOut)
def put_pay_scale(
    level: int,
    pay_point: int,
    payload: PayScaleUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    try:
        row = set_pay_scale_rate(db, ctx.tenant_id, level, pay_point, payload.hourly_rate)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pay scale not found")
    return row


@router.post("/pay-scales/{level}/{pay_point}/reset", response_model=PayScaleOut)
def post_pay_scale_reset(
    level: int,
    pay_point: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    row = reset_pay_scale(db, ctx.tenant_id, level, pay_point)
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pay scale not found")
    return row


@router.post("/wage-increases/preview", response_model=List[WageIncreasePreviewRow])
def post_wage_increase_preview(
    payload: WageIncreasePreviewIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    try:
        rows = preview_wage_increase(db, ctx.tenant_id, payload.percentage)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return [WageIncreasePreviewRow(**row) for row in rows]


@router.post("/wage-increases", response_model=WageIncreaseOut, status_code=status.HTTP_201_CREATED)
def post_wage_increase(
    payload: WageIncreaseApplyIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    try:
        return apply_wage_increase(
            db,
            ctx.tenant_id,
            payload.percentage,
            payload.effective_date,
            actor_id=ctx.user_id,
            note=payload.note,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/wage-increases", response_model=List[WageIncreaseOut])
def get_wage_increases(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    return list_wage_increases(db, ctx.tenant_id)


# Participant budgets


@router.get("/clients/{client_id}/budget", response_model=List[BudgetOut])
def get_client_budget(
    client_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    if not get_client(db, ctx.tenant_id, client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return list_budgets(db, ctx.tenant_id, client_id)


@router.put("/clients/{client_id}/budget/{category}", response_model=BudgetOut)
def put_client_budget(
    client_id: int,
    category: str,
    payload: BudgetUpsert,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    try:
        row = set_budget(
            db,
            ctx.tenant_id,
            client_id,
            category,
            payload.allocated,
            plan_start=payload.plan_start,
            plan_end=payload.plan_end,
            actor_id=ctx.user_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return row


@router.get("/clients/{client_id}/budget/transactions", response_model=List[BudgetTransactionOut])
def get_client_budget_transactions(
    client_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    if not get_client(db, ctx.tenant_id, client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Client not found")
    return list_budget_transactions(db, ctx.tenant_id, client_id)


# Timesheets


def _to_timesheet_detail(db: Session, row: Timesheet) -> TimesheetDetailOut:
    entries = list_timesheet_entries(db, row.tenant_id, row.id)
    return TimesheetDetailOut(
        **TimesheetOut.model_validate(row).model_dump(),
        entries=[TimesheetEntryOut.model_validate(e) for e in entries],
    )


@router.get("/timesheets", response_model=List[TimesheetOut])
def get_timesheets(
    user_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    # Support workers only ever see their own timesheets.
    if not ctx.has_role(*MANAGER_ROLES):
        user_id = ctx.user_id
    return list_timesheets(db, ctx.tenant_id, user_id=user_id, status=status_filter)


@router.get("/timesheets/{timesheet_id}", response_model=TimesheetDetailOut)
def get_timesheet_detail(
    timesheet_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    row = get_timesheet(db, ctx.tenant_id, timesheet_id)
    if not row or (row.user_id != ctx.user_id and not ctx.has_role(*MANAGER_ROLES)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Timesheet not found")
    return _to_timesheet_detail(db, row)


@router.post("/timesheets/{timesheet_id}/approve", response_model=TimesheetDetailOut)
def post_timesheet_approve(
    timesheet_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_billing),
):
    try:
        row = approve_timesheet(db, ctx.tenant_id, timesheet_id, actor_id=ctx.user_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Timesheet not found")
    return _to_timesheet_detail(db, row)
