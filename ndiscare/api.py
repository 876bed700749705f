from datetime import date, datetime, time, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from .authn import (
    MANAGER_ROLES,
    ROLE_ADMIN,
    ROLE_COORDINATOR,
    AuthContext,
    get_auth_context,
    require_admin,
    require_manager,
    require_role,
)
from .csv_export import export_clients_csv, export_shifts_csv
from .db import get_db
from .recurrence import generate_occurrences
from .schemas import (
    ActivityOut,
    CancellationReviewIn,
    ClashCheckIn,
    ClashCheckOut,
    ClientCreate,
    ClientOut,
    ClientUpdate,
    OccurrenceOut,
    RecurrencePreviewIn,
    RecurrencePreviewOut,
    RecurringShiftCreate,
    RecurringShiftsOut,
    SeriesCancelIn,
    SeriesCancelOut,
    ShiftCancelIn,
    ShiftCancellationOut,
    ShiftCancelOut,
    ShiftCreate,
    ShiftOut,
    ShiftUpdate,
    UserCreate,
    UserOut,
    UserUpdate,
)
from .services import (
    cancel_series,
    cancel_shift_by_manager,
    complete_shift,
    create_client,
    create_recurring_shifts,
    create_shift,
    create_user,
    decide_shift_request,
    delete_client,
    delete_user,
    find_shift_clashes,
    get_client,
    get_shift,
    list_activity,
    list_clients,
    list_shift_cancellations,
    list_shifts,
    list_users,
    request_shift,
    request_shift_cancellation,
    review_shift_cancellation,
    set_client_archived,
    shift_counts_by_status,
    start_shift,
    to_utc_naive,
    update_client,
    update_shift,
    update_user,
)

router = APIRouter(prefix="/api")


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")


def _forbidden(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


# Staff


@router.get("/users", response_model=List[UserOut])
def get_users(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    return list_users(db, ctx.tenant_id, include_inactive=include_inactive)


@router.post("/users", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def add_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    try:
        return create_user(db, ctx.tenant_id, actor_id=ctx.user_id, **payload.model_dump())
    except ValueError as exc:
        raise _bad_request(exc)


@router.patch("/users/{user_id}", response_model=UserOut)
def patch_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    try:
        row = update_user(db, ctx.tenant_id, user_id, payload.model_dump(exclude_unset=True), actor_id=ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("User")
    return row


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_user(
    user_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    try:
        ok = delete_user(db, ctx.tenant_id, user_id, actor_id=ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)
    if not ok:
        raise _not_found("User")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Clients


@router.get("/clients", response_model=List[ClientOut])
def get_clients(
    q: Optional[str] = Query(default=None, max_length=80),
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    return list_clients(db, ctx.tenant_id, search=q, include_archived=include_archived)


@router.post("/clients", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def add_client(
    payload: ClientCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        return create_client(db, ctx.tenant_id, payload.model_dump(), actor_id=ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)


@router.get("/clients/{client_id}", response_model=ClientOut)
def get_client_detail(
    client_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    row = get_client(db, ctx.tenant_id, client_id)
    if not row:
        raise _not_found("Client")
    return row


@router.patch("/clients/{client_id}", response_model=ClientOut)
def patch_client(
    client_id: int,
    payload: ClientUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    row = update_client(db, ctx.tenant_id, client_id, payload.model_dump(exclude_unset=True), actor_id=ctx.user_id)
    if not row:
        raise _not_found("Client")
    return row


@router.post("/clients/{client_id}/archive", response_model=ClientOut)
def archive_client(
    client_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    row = set_client_archived(db, ctx.tenant_id, client_id, True, actor_id=ctx.user_id)
    if not row:
        raise _not_found("Client")
    return row


@router.post("/clients/{client_id}/restore", response_model=ClientOut)
def restore_client(
    client_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    row = set_client_archived(db, ctx.tenant_id, client_id, False, actor_id=ctx.user_id)
    if not row:
        raise _not_found("Client")
    return row


@router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_client(
    client_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    if not delete_client(db, ctx.tenant_id, client_id, actor_id=ctx.user_id):
        raise _not_found("Client")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Shifts


def _can_see_shift(ctx: AuthContext, shift) -> bool:
    # Support workers see their own shifts and the open ones they may request.
    if ctx.has_role(*MANAGER_ROLES):
        return True
    return shift.user_id == ctx.user_id or shift.status == "unassigned"


@router.get("/shifts", response_model=List[ShiftOut])
def get_shifts(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    user_id: Optional[int] = Query(default=None),
    client_id: Optional[int] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    series_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    rows = list_shifts(
        db,
        ctx.tenant_id,
        start_from=start,
        start_to=end,
        user_id=user_id,
        client_id=client_id,
        status=status_filter,
        series_id=series_id,
    )
    return [s for s in rows if _can_see_shift(ctx, s)]


@router.post("/shifts", response_model=ShiftOut, status_code=status.HTTP_201_CREATED)
def add_shift(
    payload: ShiftCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        return create_shift(db, ctx.tenant_id, actor_id=ctx.user_id, **payload.model_dump())
    except ValueError as exc:
        raise _bad_request(exc)


@router.post("/shifts/recurring/preview", response_model=RecurrencePreviewOut)
def preview_recurring_shifts(
    payload: RecurrencePreviewIn,
    ctx: AuthContext = Depends(require_manager),
):
    rule = payload.recurrence
    try:
        plan = generate_occurrences(
            payload.start_time,
            payload.end_time,
            rule.unit,
            count=rule.occurrences,
            end_date=rule.end_date,
        )
    except ValueError as exc:
        raise _bad_request(exc)
    return RecurrencePreviewOut(
        count=len(plan),
        occurrences=[
            OccurrenceOut(start_time=to_utc_naive(o.start), end_time=to_utc_naive(o.end)) for o in plan
        ],
    )


@router.post("/shifts/recurring", response_model=RecurringShiftsOut, status_code=status.HTTP_201_CREATED)
def add_recurring_shifts(
    payload: RecurringShiftCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    rule = payload.recurrence
    try:
        series_id, shifts = create_recurring_shifts(
            db,
            ctx.tenant_id,
            title=payload.title,
            start_time=payload.start_time,
            end_time=payload.end_time,
            unit=rule.unit,
            occurrences=rule.occurrences,
            end_date=rule.end_date,
            user_id=payload.user_id,
            client_id=payload.client_id,
            staff_ratio=payload.staff_ratio,
            funding_category=payload.funding_category,
            actor_id=ctx.user_id,
        )
    except ValueError as exc:
        raise _bad_request(exc)
    return RecurringShiftsOut(
        series_id=series_id,
        count=len(shifts),
        shifts=[ShiftOut.model_validate(s) for s in shifts],
    )


@router.post("/shifts/series/{series_id}/cancel", response_model=SeriesCancelOut)
def cancel_shift_series(
    series_id: str,
    payload: SeriesCancelIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    if not list_shifts(db, ctx.tenant_id, series_id=series_id):
        raise _not_found("Series")
    count = cancel_series(db, ctx.tenant_id, series_id, from_time=payload.from_time, actor_id=ctx.user_id)
    return SeriesCancelOut(series_id=series_id, cancelled=count)


@router.post("/shifts/check-clash", response_model=ClashCheckOut)
def check_shift_clash(
    payload: ClashCheckIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        clashes = find_shift_clashes(
            db,
            ctx.tenant_id,
            user_id=payload.user_id,
            start_time=payload.start_time,
            end_time=payload.end_time,
            exclude_shift_id=payload.exclude_shift_id,
        )
    except ValueError as exc:
        raise _bad_request(exc)
    if clashes:
        message = f"Staff member has {len(clashes)} overlapping shift(s)"
    else:
        message = "No clashes found"
    return ClashCheckOut(
        has_clash=bool(clashes),
        message=message,
        clashes=[ShiftOut.model_validate(s) for s in clashes],
    )


@router.get("/shifts/status-counts")
def get_shift_status_counts(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    return shift_counts_by_status(db, ctx.tenant_id)


@router.get("/shifts/{shift_id}", response_model=ShiftOut)
def get_shift_detail(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    row = get_shift(db, ctx.tenant_id, shift_id)
    if not row or not _can_see_shift(ctx, row):
        raise _not_found("Shift")
    return row


@router.patch("/shifts/{shift_id}", response_model=ShiftOut)
def patch_shift(
    shift_id: int,
    payload: ShiftUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    try:
        row = update_shift(db, ctx.tenant_id, shift_id, changes, actor_id=ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Shift")
    return row


@router.delete("/shifts/{shift_id}", response_model=ShiftOut)
def cancel_shift(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    """Shifts are never deleted; this marks the shift cancelled."""
    try:
        row = cancel_shift_by_manager(db, ctx.tenant_id, shift_id, actor_id=ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Shift")
    return row


@router.post("/shifts/{shift_id}/request", response_model=ShiftOut)
def request_open_shift(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        row = request_shift(db, ctx.tenant_id, shift_id, ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Shift")
    return row


@router.post("/shifts/{shift_id}/approve", response_model=ShiftOut)
def approve_shift_request(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        row = decide_shift_request(db, ctx.tenant_id, shift_id, True, actor_id=ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Shift")
    return row


@router.post("/shifts/{shift_id}/reject", response_model=ShiftOut)
def reject_shift_request(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        row = decide_shift_request(db, ctx.tenant_id, shift_id, False, actor_id=ctx.user_id)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Shift")
    return row


@router.post("/shifts/{shift_id}/start", response_model=ShiftOut)
def start_assigned_shift(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        row = start_shift(db, ctx.tenant_id, shift_id, ctx.user_id, is_manager=ctx.has_role(*MANAGER_ROLES))
    except PermissionError as exc:
        raise _forbidden(exc)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Shift")
    return row


@router.post("/shifts/{shift_id}/end", response_model=ShiftOut)
def end_assigned_shift(
    shift_id: int,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        row = complete_shift(db, ctx.tenant_id, shift_id, ctx.user_id, is_manager=ctx.has_role(*MANAGER_ROLES))
    except PermissionError as exc:
        raise _forbidden(exc)
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Shift")
    return row


@router.post("/shifts/{shift_id}/cancel", response_model=ShiftCancelOut)
def cancel_own_shift(
    shift_id: int,
    payload: ShiftCancelIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    try:
        result = request_shift_cancellation(db, ctx.tenant_id, shift_id, ctx.user_id, reason=payload.reason)
    except PermissionError as exc:
        raise _forbidden(exc)
    except ValueError as exc:
        raise _bad_request(exc)
    if not result:
        raise _not_found("Shift")
    shift, cancellation = result
    return ShiftCancelOut(
        shift=ShiftOut.model_validate(shift),
        cancellation=ShiftCancellationOut.model_validate(cancellation),
    )


@router.get("/shift-cancellations", response_model=List[ShiftCancellationOut])
def get_shift_cancellations(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    return list_shift_cancellations(db, ctx.tenant_id, status=status_filter)


@router.post("/shift-cancellations/{cancellation_id}/review", response_model=ShiftCancellationOut)
def review_cancellation(
    cancellation_id: int,
    payload: CancellationReviewIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    try:
        row = review_shift_cancellation(
            db, ctx.tenant_id, cancellation_id, payload.approve, actor_id=ctx.user_id, note=payload.note
        )
    except ValueError as exc:
        raise _bad_request(exc)
    if not row:
        raise _not_found("Cancellation request")
    return row


# Audit and exports


@router.get("/activity-logs", response_model=List[ActivityOut])
def get_activity_logs(
    resource_type: Optional[str] = Query(default=None),
    resource_id: Optional[int] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_role(ROLE_ADMIN, ROLE_COORDINATOR)),
):
    return list_activity(db, ctx.tenant_id, resource_type=resource_type, resource_id=resource_id, limit=limit)


@router.get("/exports/clients.csv")
def export_clients(
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    csv_text = export_clients_csv(db, ctx.tenant_id, include_archived=include_archived)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="clients.csv"'},
    )


@router.get("/exports/shifts.csv")
def export_shifts(
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_manager),
):
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must not be before start")
    start_dt = datetime.combine(start, time.min)
    end_dt = datetime.combine(end, time.min) + timedelta(days=1)
    csv_text = export_shifts_csv(db, ctx.tenant_id, start_dt, end_dt)
    filename = f"shifts_{start.isoformat()}_{end.isoformat()}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
