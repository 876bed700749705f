from datetime import datetime, timezone

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from .authn import (
    ROLE_ADMIN,
    ROLE_SUPPORT_WORKER,
    ROLES,
    hash_password,
    revoke_all_sessions_for_user,
    validate_password_policy,
)
from .config import settings
from .models import (
    ActivityLog,
    CaseNote,
    Client,
    Shift,
    ShiftCancellation,
    Tenant,
    User,
)
from .recurrence import generate_occurrences, new_series_id
from .request_context import request_id_ctx

logger = structlog.get_logger("ndiscare.services")

EMPLOYMENT_TYPES = {"full-time", "part-time", "casual"}

SHIFT_STATUSES = {
    "unassigned",
    "requested",
    "assigned",
    "in-progress",
    "completed",
    "cancelled",
    "cancellation-requested",
}
ALLOWED_SHIFT_STATUS_TRANSITIONS = {
    "unassigned": {"requested", "assigned", "cancelled"},
    "requested": {"assigned", "unassigned", "cancelled"},
    "assigned": {"in-progress", "unassigned", "cancellation-requested", "cancelled"},
    "cancellation-requested": {"assigned", "unassigned", "cancelled"},
    "in-progress": {"completed"},
    "completed": set(),
    "cancelled": set(),
}
FINAL_SHIFT_STATUSES = {"completed", "cancelled"}
CLASH_IGNORED_STATUSES = {"completed", "cancelled"}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def log_activity(
    db: Session,
    tenant_id: int,
    action: str,
    resource_type: str,
    resource_id: int | None = None,
    user_id: int | None = None,
    description: str | None = None,
) -> ActivityLog:
    row = ActivityLog(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        description=(description or "").strip()[:500] or None,
        request_id=(request_id_ctx.get() or "")[:64] or None,
        created_at=utc_now_naive(),
    )
    db.add(row)
    return row


def list_activity(
    db: Session,
    tenant_id: int,
    resource_type: str | None = None,
    resource_id: int | None = None,
    limit: int = 100,
) -> list[ActivityLog]:
    q = select(ActivityLog).where(ActivityLog.tenant_id == tenant_id)
    if resource_type:
        q = q.where(ActivityLog.resource_type == resource_type)
    if resource_id is not None:
        q = q.where(ActivityLog.resource_id == resource_id)
    q = q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(max(1, min(limit, 1000)))
    return list(db.execute(q).scalars().all())


# Tenants and users


def get_tenant_by_slug(db: Session, slug: str) -> Tenant | None:
    return db.execute(
        select(Tenant).where(Tenant.slug == slug.strip().lower())
    ).scalar_one_or_none()


def provision_tenant(
    db: Session,
    slug: str,
    name: str,
    admin_username: str,
    admin_password: str,
    admin_full_name: str,
    admin_email: str | None = None,
) -> tuple[Tenant, User]:
    from .billing import seed_default_prices
    from .wages import seed_default_pay_scales

    normalized_slug = slug.strip().lower()
    if get_tenant_by_slug(db, normalized_slug):
        raise ValueError("Tenant slug already exists")
    validate_password_policy(admin_password)

    tenant = Tenant(slug=normalized_slug, name=name.strip(), created_at=utc_now_naive())
    db.add(tenant)
    db.flush()

    admin = User(
        tenant_id=tenant.id,
        username=admin_username.strip().lower(),
        email=(admin_email or "").strip().lower() or None,
        full_name=admin_full_name.strip(),
        password_hash=hash_password(admin_password),
        role=ROLE_ADMIN,
        employment_type="full-time",
    )
    db.add(admin)
    db.flush()

    scales = seed_default_pay_scales(db, tenant.id)
    prices = seed_default_prices(db, tenant.id)
    log_activity(db, tenant.id, "tenant_provisioned", "tenant", tenant.id, admin.id, f"Tenant {tenant.slug} created")
    db.commit()
    db.refresh(tenant)
    db.refresh(admin)
    logger.info(
        "tenant_provisioned",
        tenant=tenant.slug,
        admin_user_id=admin.id,
        pay_scales=scales,
        prices=prices,
    )
    return tenant, admin


def list_users(db: Session, tenant_id: int, include_inactive: bool = False) -> list[User]:
    q = select(User).where(User.tenant_id == tenant_id)
    if not include_inactive:
        q = q.where(User.is_active.is_(True))
    return list(db.execute(q.order_by(User.full_name.asc(), User.id.asc())).scalars().all())


def get_user(db: Session, tenant_id: int, user_id: int) -> User | None:
    return db.execute(
        select(User).where(User.id == user_id, User.tenant_id == tenant_id)
    ).scalar_one_or_none()


def _validate_user_fields(role: str | None, employment_type: str | None) -> None:
    if role is not None and role not in ROLES:
        raise ValueError("Invalid role")
    if employment_type is not None and employment_type not in EMPLOYMENT_TYPES:
        raise ValueError("Invalid employment type")


def create_user(
    db: Session,
    tenant_id: int,
    username: str,
    password: str,
    full_name: str,
    role: str = ROLE_SUPPORT_WORKER,
    email: str | None = None,
    employment_type: str = "casual",
    pay_level: int = 1,
    pay_point: int = 1,
    actor_id: int | None = None,
) -> User:
    _validate_user_fields(role, employment_type)
    validate_password_policy(password)
    normalized_username = username.strip().lower()
    exists = db.execute(
        select(User.id).where(User.tenant_id == tenant_id, User.username == normalized_username)
    ).first()
    if exists:
        raise ValueError("Username already exists")

    row = User(
        tenant_id=tenant_id,
        username=normalized_username,
        email=(email or "").strip().lower() or None,
        full_name=full_name.strip(),
        password_hash=hash_password(password),
        role=role,
        employment_type=employment_type,
        pay_level=int(pay_level),
        pay_point=int(pay_point),
        is_active=True,
    )
    db.add(row)
    db.flush()
    log_activity(db, tenant_id, "user_created", "user", row.id, actor_id, f"{row.username} ({row.role})")
    db.commit()
    db.refresh(row)
    return row


def update_user(
    db: Session,
    tenant_id: int,
    user_id: int,
    changes: dict,
    actor_id: int | None = None,
) -> User | None:
    row = get_user(db, tenant_id, user_id)
    if not row:
        return None
    _validate_user_fields(changes.get("role"), changes.get("employment_type"))

    for field in ("full_name", "email", "role", "employment_type", "pay_level", "pay_point", "is_active"):
        if field in changes and changes[field] is not None:
            setattr(row, field, changes[field])
    if changes.get("password"):
        validate_password_policy(changes["password"])
        row.password_hash = hash_password(changes["password"])
    row.updated_at = utc_now_naive()
    log_activity(db, tenant_id, "user_updated", "user", row.id, actor_id, ", ".join(sorted(changes)))
    db.commit()
    db.refresh(row)
    if row.is_active is False or changes.get("password"):
        revoke_all_sessions_for_user(db, tenant_id, row.id)
    return row


def delete_user(db: Session, tenant_id: int, user_id: int, actor_id: int | None = None) -> bool:
    """Delete a staff member and un-assign their shifts.

    Shifts are kept: open ones go back to ``unassigned`` and finished ones
    simply lose their assignee.
    """
    row = get_user(db, tenant_id, user_id)
    if not row:
        return False
    if actor_id is not None and actor_id == row.id:
        raise ValueError("You cannot delete your own account")

    now = utc_now_naive()
    db.execute(
        update(ShiftCancellation)
        .where(
            ShiftCancellation.tenant_id == tenant_id,
            ShiftCancellation.requested_by_user_id == row.id,
            ShiftCancellation.status == "pending",
        )
        .values(status="approved", reviewed_by_user_id=actor_id, reviewed_at=now, review_note="staff member deleted")
    )
    db.execute(
        update(Shift)
        .where(
            Shift.tenant_id == tenant_id,
            Shift.user_id == row.id,
            Shift.status.in_({"requested", "assigned", "cancellation-requested"}),
        )
        .values(user_id=None, status="unassigned", updated_at=now)
    )
    db.execute(
        update(Shift)
        .where(Shift.tenant_id == tenant_id, Shift.user_id == row.id)
        .values(user_id=None, updated_at=now)
    )
    db.execute(
        update(CaseNote)
        .where(CaseNote.tenant_id == tenant_id, CaseNote.author_user_id == row.id)
        .values(author_user_id=None)
    )
    log_activity(db, tenant_id, "user_deleted", "user", row.id, actor_id, row.username)
    db.delete(row)
    db.commit()
    return True


# Clients


def list_clients(
    db: Session,
    tenant_id: int,
    search: str | None = None,
    include_archived: bool = False,
) -> list[Client]:
    q = select(Client).where(Client.tenant_id == tenant_id)
    if not include_archived:
        q = q.where(Client.is_active.is_(True))
    if search:
        like = f"%{search.strip()}%"
        q = q.where(
            or_(
                Client.first_name.ilike(like),
                Client.last_name.ilike(like),
                Client.ndis_number.ilike(like),
            )
        )
    return list(db.execute(q.order_by(Client.last_name.asc(), Client.first_name.asc())).scalars().all())


def get_client(db: Session, tenant_id: int, client_id: int) -> Client | None:
    return db.execute(
        select(Client).where(Client.id == client_id, Client.tenant_id == tenant_id)
    ).scalar_one_or_none()


_CLIENT_FIELDS = (
    "first_name",
    "last_name",
    "ndis_number",
    "date_of_birth",
    "address",
    "emergency_contact",
    "care_level",
    "notes",
)


def create_client(db: Session, tenant_id: int, data: dict, actor_id: int | None = None) -> Client:
    ndis_number = (data.get("ndis_number") or "").strip() or None
    if ndis_number:
        duplicate = db.execute(
            select(Client.id).where(Client.tenant_id == tenant_id, Client.ndis_number == ndis_number)
        ).first()
        if duplicate:
            raise ValueError("A client with this NDIS number already exists")

    row = Client(tenant_id=tenant_id, is_active=True)
    for field in _CLIENT_FIELDS:
        if field in data:
            setattr(row, field, data[field])
    row.ndis_number = ndis_number
    db.add(row)
    db.flush()
    log_activity(db, tenant_id, "client_created", "client", row.id, actor_id, f"{row.first_name} {row.last_name}")
    db.commit()
    db.refresh(row)
    return row


def update_client(
    db: Session, tenant_id: int, client_id: int, changes: dict, actor_id: int | None = None
) -> Client | None:
    row = get_client(db, tenant_id, client_id)
    if not row:
        return None
    for field in _CLIENT_FIELDS:
        if field in changes:
            setattr(row, field, changes[field])
    row.updated_at = utc_now_naive()
    log_activity(db, tenant_id, "client_updated", "client", row.id, actor_id, ", ".join(sorted(changes)))
    db.commit()
    db.refresh(row)
    return row


def set_client_archived(
    db: Session, tenant_id: int, client_id: int, archived: bool, actor_id: int | None = None
) -> Client | None:
    row = get_client(db, tenant_id, client_id)
    if not row:
        return None
    row.is_active = not archived
    row.updated_at = utc_now_naive()
    log_activity(
        db, tenant_id, "client_archived" if archived else "client_restored", "client", row.id, actor_id
    )
    db.commit()
    db.refresh(row)
    return row


def delete_client(db: Session, tenant_id: int, client_id: int, actor_id: int | None = None) -> bool:
    """Hard delete; shifts, notes, medication records, plans and invoices
    go with the client through the composite cascade."""
    row = get_client(db, tenant_id, client_id)
    if not row:
        return False
    log_activity(db, tenant_id, "client_deleted", "client", row.id, actor_id, f"{row.first_name} {row.last_name}")
    db.delete(row)
    db.commit()
    return True


# Shifts


def get_shift(db: Session, tenant_id: int, shift_id: int) -> Shift | None:
    return db.execute(
        select(Shift).where(Shift.id == shift_id, Shift.tenant_id == tenant_id)
    ).scalar_one_or_none()


def _require_assignee(db: Session, tenant_id: int, user_id: int | None) -> None:
    if user_id is None:
        return
    user = get_user(db, tenant_id, user_id)
    if not user or not user.is_active:
        raise ValueError("Staff member not found")


def _require_client(db: Session, tenant_id: int, client_id: int | None) -> None:
    if client_id is None:
        return
    if not get_client(db, tenant_id, client_id):
        raise ValueError("Client not found")


def _set_shift_status(
    db: Session,
    shift: Shift,
    target_status: str,
    actor_id: int | None = None,
    note: str | None = None,
) -> None:
    current_status = shift.status or "unassigned"
    if target_status not in SHIFT_STATUSES:
        raise ValueError("Invalid shift status")
    if target_status == current_status:
        return
    allowed = ALLOWED_SHIFT_STATUS_TRANSITIONS.get(current_status, set())
    if target_status not in allowed:
        raise ValueError(f"Invalid shift status transition: {current_status} -> {target_status}")
    shift.status = target_status
    shift.updated_at = utc_now_naive()
    description = f"{current_status} -> {target_status}"
    if note:
        description = f"{description}: {note}"
    log_activity(db, shift.tenant_id, "shift_status_changed", "shift", shift.id, actor_id, description)


def _close_pending_cancellations(
    db: Session, shift: Shift, actor_id: int | None = None, note: str | None = None
) -> int:
    """Resolve cancellation requests a manager action has made moot.

    The requesting worker no longer holds the shift, so the request counts
    as approved.
    """
    rows = db.execute(
        select(ShiftCancellation).where(
            ShiftCancellation.tenant_id == shift.tenant_id,
            ShiftCancellation.shift_id == shift.id,
            ShiftCancellation.status == "pending",
        )
    ).scalars().all()
    for row in rows:
        row.status = "approved"
        row.reviewed_by_user_id = actor_id
        row.reviewed_at = utc_now_naive()
        row.review_note = note
    return len(rows)


def create_shift(
    db: Session,
    tenant_id: int,
    title: str,
    start_time: datetime,
    end_time: datetime,
    user_id: int | None = None,
    client_id: int | None = None,
    series_id: str | None = None,
    staff_ratio: str = "1:1",
    funding_category: str | None = None,
    actor_id: int | None = None,
    commit: bool = True,
) -> Shift:
    start = to_utc_naive(start_time)
    end = to_utc_naive(end_time)
    if end <= start:
        raise ValueError("Shift end must be after its start")
    _require_assignee(db, tenant_id, user_id)
    _require_client(db, tenant_id, client_id)

    shift = Shift(
        tenant_id=tenant_id,
        user_id=user_id,
        client_id=client_id,
        title=title.strip(),
        start_time=start,
        end_time=end,
        status="assigned" if user_id else "unassigned",
        series_id=(series_id or "").strip() or None,
        staff_ratio=staff_ratio,
        funding_category=funding_category,
    )
    db.add(shift)
    db.flush()
    log_activity(db, tenant_id, "shift_created", "shift", shift.id, actor_id, shift.title)
    if commit:
        db.commit()
        db.refresh(shift)
    return shift


def create_recurring_shifts(
    db: Session,
    tenant_id: int,
    title: str,
    start_time: datetime,
    end_time: datetime,
    unit: str,
    occurrences: int | None = None,
    end_date=None,
    user_id: int | None = None,
    client_id: int | None = None,
    staff_ratio: str = "1:1",
    funding_category: str | None = None,
    actor_id: int | None = None,
) -> tuple[str, list[Shift]]:
    """Expand a recurrence and insert the whole series in one transaction."""
    # Expanded in the submitted offset so monthly anchors follow the local
    # day; each occurrence is normalised by create_shift.
    plan = generate_occurrences(start_time, end_time, unit, count=occurrences, end_date=end_date)
    series_id = new_series_id()
    created: list[Shift] = []
    try:
        for occurrence in plan:
            created.append(
                create_shift(
                    db,
                    tenant_id,
                    title=title,
                    start_time=occurrence.start,
                    end_time=occurrence.end,
                    user_id=user_id,
                    client_id=client_id,
                    series_id=series_id,
                    staff_ratio=staff_ratio,
                    funding_category=funding_category,
                    actor_id=actor_id,
                    commit=False,
                )
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    for shift in created:
        db.refresh(shift)
    logger.info(
        "shift_series_created",
        tenant_id=tenant_id,
        series_id=series_id,
        unit=unit,
        count=len(created),
    )
    return series_id, created


def list_shifts(
    db: Session,
    tenant_id: int,
    start_from: datetime | None = None,
    start_to: datetime | None = None,
    user_id: int | None = None,
    client_id: int | None = None,
    status: str | None = None,
    series_id: str | None = None,
) -> list[Shift]:
    q = select(Shift).where(Shift.tenant_id == tenant_id)
    if start_from is not None:
        q = q.where(Shift.start_time >= to_utc_naive(start_from))
    if start_to is not None:
        q = q.where(Shift.start_time < to_utc_naive(start_to))
    if user_id is not None:
        q = q.where(Shift.user_id == user_id)
    if client_id is not None:
        q = q.where(Shift.client_id == client_id)
    if status:
        q = q.where(Shift.status == status)
    if series_id:
        q = q.where(Shift.series_id == series_id)
    return list(db.execute(q.order_by(Shift.start_time.asc(), Shift.id.asc())).scalars().all())


def update_shift(
    db: Session,
    tenant_id: int,
    shift_id: int,
    changes: dict,
    actor_id: int | None = None,
) -> Shift | None:
    shift = get_shift(db, tenant_id, shift_id)
    if not shift:
        return None
    if shift.status in FINAL_SHIFT_STATUSES:
        raise ValueError(f"Cannot edit a {shift.status} shift")

    start = to_utc_naive(changes["start_time"]) if changes.get("start_time") else shift.start_time
    end = to_utc_naive(changes["end_time"]) if changes.get("end_time") else shift.end_time
    if end <= start:
        raise ValueError("Shift end must be after its start")
    shift.start_time = start
    shift.end_time = end

    if "client_id" in changes:
        _require_client(db, tenant_id, changes["client_id"])
        shift.client_id = changes["client_id"]
    for field in ("title", "staff_ratio", "funding_category"):
        if changes.get(field) is not None:
            setattr(shift, field, changes[field])

    if "user_id" in changes and changes["user_id"] != shift.user_id:
        new_user_id = changes["user_id"]
        if shift.status == "in-progress":
            raise ValueError("Cannot reassign a shift that is in progress")
        _require_assignee(db, tenant_id, new_user_id)
        if shift.status == "cancellation-requested":
            _close_pending_cancellations(db, shift, actor_id, "shift reassigned")
        shift.user_id = new_user_id
        _set_shift_status(db, shift, "assigned" if new_user_id else "unassigned", actor_id, "reassigned")

    shift.updated_at = utc_now_naive()
    log_activity(db, tenant_id, "shift_updated", "shift", shift.id, actor_id, ", ".join(sorted(changes)))
    db.commit()
    db.refresh(shift)
    return shift


def request_shift(db: Session, tenant_id: int, shift_id: int, user_id: int) -> Shift | None:
    shift = get_shift(db, tenant_id, shift_id)
    if not shift:
        return None
    if shift.status != "unassigned" or shift.user_id is not None:
        raise ValueError("Only unassigned shifts can be requested")
    _require_assignee(db, tenant_id, user_id)
    shift.user_id = user_id
    _set_shift_status(db, shift, "requested", user_id)
    db.commit()
    db.refresh(shift)
    return shift


def decide_shift_request(
    db: Session, tenant_id: int, shift_id: int, approve: bool, actor_id: int | None = None
) -> Shift | None:
    shift = get_shift(db, tenant_id, shift_id)
    if not shift:
        return None
    if shift.status != "requested":
        raise ValueError("Shift has no pending request")
    if approve:
        _set_shift_status(db, shift, "assigned", actor_id, "request approved")
    else:
        shift.user_id = None
        _set_shift_status(db, shift, "unassigned", actor_id, "request rejected")
    db.commit()
    db.refresh(shift)
    return shift


def start_shift(
    db: Session, tenant_id: int, shift_id: int, actor_id: int, is_manager: bool = False
) -> Shift | None:
    shift = get_shift(db, tenant_id, shift_id)
    if not shift:
        return None
    if shift.user_id != actor_id and not is_manager:
        raise PermissionError("Only the assigned staff member can start this shift")
    _set_shift_status(db, shift, "in-progress", actor_id)
    shift.start_timestamp = utc_now_naive()
    db.commit()
    db.refresh(shift)
    return shift


def complete_shift(
    db: Session, tenant_id: int, shift_id: int, actor_id: int, is_manager: bool = False
) -> Shift | None:
    """Finish a shift, charge its participant budget and add it to the
    worker's timesheet in one transaction."""
    from .budgets import deduct_for_completed_shift
    from .timesheets import record_completed_shift

    shift = get_shift(db, tenant_id, shift_id)
    if not shift:
        return None
    if shift.user_id != actor_id and not is_manager:
        raise PermissionError("Only the assigned staff member can end this shift")
    _set_shift_status(db, shift, "completed", actor_id)
    shift.end_timestamp = utc_now_naive()
    deduct_for_completed_shift(db, shift)
    record_completed_shift(db, shift, shift.end_timestamp)
    db.commit()
    db.refresh(shift)
    return shift


def cancel_shift_by_manager(
    db: Session, tenant_id: int, shift_id: int, actor_id: int | None = None, reason: str | None = None
) -> Shift | None:
    shift = get_shift(db, tenant_id, shift_id)
    if not shift:
        return None
    if shift.status == "cancellation-requested":
        _close_pending_cancellations(db, shift, actor_id, "shift cancelled")
    _set_shift_status(db, shift, "cancelled", actor_id, reason)
    db.commit()
    db.refresh(shift)
    return shift


def request_shift_cancellation(
    db: Session,
    tenant_id: int,
    shift_id: int,
    user_id: int,
    reason: str | None = None,
    now: datetime | None = None,
) -> tuple[Shift, ShiftCancellation] | None:
    """Cancel a shift by its assigned worker.

    With at least ``CANCELLATION_NOTICE_HOURS`` of notice the shift is
    released immediately. Shorter notice creates a pending request for a
    manager to review.
    """
    shift = get_shift(db, tenant_id, shift_id)
    if not shift:
        return None
    if shift.user_id != user_id:
        raise PermissionError("You can only cancel your own shifts")
    if shift.status != "assigned":
        raise ValueError("Only assigned shifts can be cancelled")

    reference = now or utc_now_naive()
    hours_notice = round((shift.start_time - reference).total_seconds() / 3600.0, 2)
    immediate = hours_notice >= float(settings.CANCELLATION_NOTICE_HOURS)

    cancellation = ShiftCancellation(
        tenant_id=tenant_id,
        shift_id=shift.id,
        requested_by_user_id=user_id,
        cancellation_type="immediate" if immediate else "requested",
        reason=(reason or "").strip() or None,
        hours_notice=hours_notice,
        status="approved" if immediate else "pending",
        created_at=reference,
    )
    db.add(cancellation)
    if immediate:
        shift.user_id = None
        _set_shift_status(db, shift, "unassigned", user_id, "cancelled with notice")
    else:
        _set_shift_status(db, shift, "cancellation-requested", user_id, "short notice")
    db.commit()
    db.refresh(shift)
    db.refresh(cancellation)
    return shift, cancellation


def list_shift_cancellations(
    db: Session, tenant_id: int, status: str | None = None
) -> list[ShiftCancellation]:
    q = select(ShiftCancellation).where(ShiftCancellation.tenant_id == tenant_id)
    if status:
        q = q.where(ShiftCancellation.status == status)
    return list(db.execute(q.order_by(ShiftCancellation.created_at.desc())).scalars().all())


def review_shift_cancellation(
    db: Session,
    tenant_id: int,
    cancellation_id: int,
    approve: bool,
    actor_id: int | None = None,
    note: str | None = None,
) -> ShiftCancellation | None:
    row = db.execute(
        select(ShiftCancellation).where(
            ShiftCancellation.id == cancellation_id,
            ShiftCancellation.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if not row:
        return None
    if row.status != "pending":
        raise ValueError("Cancellation request was already reviewed")
    shift = get_shift(db, tenant_id, row.shift_id)
    if (
        shift is None
        or shift.status != "cancellation-requested"
        or shift.user_id != row.requested_by_user_id
    ):
        raise ValueError("Shift is no longer awaiting this cancellation")
    if approve:
        shift.user_id = None
        _set_shift_status(db, shift, "unassigned", actor_id, "cancellation approved")
    else:
        _set_shift_status(db, shift, "assigned", actor_id, "cancellation rejected")
    row.status = "approved" if approve else "rejected"
    row.reviewed_by_user_id = actor_id
    row.reviewed_at = utc_now_naive()
    row.review_note = (note or "").strip() or None
    db.commit()
    db.refresh(row)
    return row


def cancel_series(
    db: Session,
    tenant_id: int,
    series_id: str,
    from_time: datetime | None = None,
    actor_id: int | None = None,
) -> int:
    """Cancel the not yet started instances of a series."""
    cutoff = to_utc_naive(from_time) if from_time else utc_now_naive()
    rows = db.execute(
        select(Shift).where(
            Shift.tenant_id == tenant_id,
            Shift.series_id == series_id,
            Shift.start_time >= cutoff,
            Shift.status.in_({"unassigned", "requested", "assigned", "cancellation-requested"}),
        )
    ).scalars().all()
    for shift in rows:
        if shift.status == "cancellation-requested":
            _close_pending_cancellations(db, shift, actor_id, "series cancelled")
        _set_shift_status(db, shift, "cancelled", actor_id, f"series {series_id} cancelled")
    db.commit()
    logger.info("shift_series_cancelled", tenant_id=tenant_id, series_id=series_id, count=len(rows))
    return len(rows)


def find_shift_clashes(
    db: Session,
    tenant_id: int,
    user_id: int,
    start_time: datetime,
    end_time: datetime,
    exclude_shift_id: int | None = None,
) -> list[Shift]:
    start = to_utc_naive(start_time)
    end = to_utc_naive(end_time)
    if end <= start:
        raise ValueError("Shift end must be after its start")
    q = select(Shift).where(
        Shift.tenant_id == tenant_id,
        Shift.user_id == user_id,
        Shift.status.not_in(CLASH_IGNORED_STATUSES),
        Shift.start_time < end,
        Shift.end_time > start,
    )
    if exclude_shift_id is not None:
        q = q.where(Shift.id != exclude_shift_id)
    return list(db.execute(q.order_by(Shift.start_time.asc())).scalars().all())


def shift_counts_by_status(db: Session, tenant_id: int) -> dict[str, int]:
    rows = db.execute(
        select(Shift.status, func.count(Shift.id))
        .where(Shift.tenant_id == tenant_id)
        .group_by(Shift.status)
    ).all()
    return {status: int(count) for status, count in rows}

