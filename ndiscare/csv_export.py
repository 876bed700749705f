import csv
from io import StringIO

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Client, Shift, User


def export_clients_csv(db: Session, tenant_id: int, include_archived: bool = False) -> str:
    out = StringIO()
    w = csv.writer(out)
    w.writerow(
        ["id", "first_name", "last_name", "ndis_number", "date_of_birth", "care_level", "active"]
    )

    q = select(Client).where(Client.tenant_id == tenant_id)
    if not include_archived:
        q = q.where(Client.is_active.is_(True))
    clients = db.execute(q.order_by(Client.last_name.asc(), Client.id.asc())).scalars().all()

    for c in clients:
        w.writerow(
            [
                c.id,
                c.first_name,
                c.last_name,
                c.ndis_number or "",
                c.date_of_birth.isoformat() if c.date_of_birth else "",
                c.care_level or "",
                "yes" if c.is_active else "no",
            ]
        )

    return out.getvalue()


def export_shifts_csv(db: Session, tenant_id: int, start_dt, end_dt) -> str:
    out = StringIO()
    w = csv.writer(out)
    w.writerow(
        ["id", "start_time", "end_time", "title", "staff", "client", "status", "series_id", "hours"]
    )

    shifts = (
        db.execute(
            select(Shift)
            .where(
                Shift.tenant_id == tenant_id,
                Shift.start_time >= start_dt,
                Shift.start_time < end_dt,
            )
            .order_by(Shift.start_time.asc())
        )
        .scalars()
        .all()
    )
    user_names = {
        u.id: u.full_name
        for u in db.execute(select(User).where(User.tenant_id == tenant_id)).scalars()
    }
    client_names = {
        c.id: f"{c.first_name} {c.last_name}"
        for c in db.execute(select(Client).where(Client.tenant_id == tenant_id)).scalars()
    }

    for s in shifts:
        w.writerow(
            [
                s.id,
                s.start_time.isoformat(),
                s.end_time.isoformat(),
                s.title,
                user_names.get(s.user_id, ""),
                client_names.get(s.client_id, ""),
                s.status,
                s.series_id or "",
                round((s.end_time - s.start_time).total_seconds() / 3600.0, 2),
            ]
        )

    return out.getvalue()
