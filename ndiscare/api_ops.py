from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .authn import AuthContext, require_admin
from .db import get_db
from .observability import get_ops_metrics_snapshot
from .tenant_guard import verify_composite_constraints

router = APIRouter(prefix="/api/ops", tags=["ops"])


@router.get("/metrics")
def ops_metrics(
    window_minutes: int = Query(default=15, ge=1, le=1440),
    ctx: AuthContext = Depends(require_admin),
):
    return get_ops_metrics_snapshot(window_minutes=window_minutes)


@router.get("/tenant-keys")
def ops_tenant_keys(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
):
    constraints = verify_composite_constraints(db.connection())
    return {"count": len(constraints), "constraints": constraints}
