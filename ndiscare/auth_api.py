from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
import hmac
from threading import Lock
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response, status
from pydantic import BaseModel
import structlog
from sqlalchemy.orm import Session

from .authn import (
    AuthContext,
    authenticate_user,
    create_session,
    find_session,
    get_auth_context,
    revoke_session,
)
from .config import settings
from .db import get_db
from .models import Tenant, User
from .schemas import LoginIn, SessionUserOut, TenantProvisionIn, TenantProvisionOut
from .services import get_tenant_by_slug, provision_tenant

logger = structlog.get_logger("ndiscare.auth")

router = APIRouter(prefix="/api", tags=["auth"])
_login_failures: dict[str, deque[datetime]] = defaultdict(deque)
_login_failures_lock = Lock()


class LogoutOut(BaseModel):
    ok: bool


def _client_ip_from_request(request: Optional[Request]) -> str:
    if request is None:
        return "unknown"
    xff = (request.headers.get("x-forwarded-for") or "").strip()
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first[:64]
    if request.client and request.client.host:
        return str(request.client.host)[:64]
    return "unknown"


def _login_rate_limit_key(tenant_slug: str, username: str, client_ip: str) -> str:
    return f"{tenant_slug.strip().lower()}|{username.strip().lower()}|{client_ip.strip().lower()}"


def _prune_login_failures(now: datetime) -> None:
    cutoff = now - timedelta(hours=1)
    to_delete = []
    for key, events in _login_failures.items():
        while events and events[0] < cutoff:
            events.popleft()
        if not events:
            to_delete.append(key)
    for key in to_delete:
        _login_failures.pop(key, None)


def _is_login_rate_limited(key: str) -> bool:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    minute_cutoff = now - timedelta(minutes=1)
    per_min = max(1, int(settings.AUTH_LOGIN_RL_PER_MIN))
    per_hour = max(1, int(settings.AUTH_LOGIN_RL_PER_HOUR))
    with _login_failures_lock:
        _prune_login_failures(now)
        events = _login_failures.get(key) or deque()
        minute_count = sum(1 for ts in events if ts >= minute_cutoff)
        return minute_count >= per_min or len(events) >= per_hour


def _record_login_failure(key: str) -> None:
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    with _login_failures_lock:
        _prune_login_failures(now)
        _login_failures[key].append(now)


def _clear_login_failures(key: str) -> None:
    with _login_failures_lock:
        _login_failures.pop(key, None)


def reset_login_failures() -> None:
    with _login_failures_lock:
        _login_failures.clear()


def _session_user_out(user: User, tenant: Tenant) -> SessionUserOut:
    return SessionUserOut(
        id=user.id,
        username=user.username,
        full_name=user.full_name,
        role=user.role,
        tenant_id=tenant.id,
        tenant_slug=tenant.slug,
        tenant_name=tenant.name,
    )


@router.post("/auth/login", response_model=SessionUserOut)
def login(payload: LoginIn, request: Request, response: Response, db: Session = Depends(get_db)):
    slug = payload.tenant_slug.strip().lower()
    rl_key = _login_rate_limit_key(slug, payload.username, _client_ip_from_request(request))
    if _is_login_rate_limited(rl_key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many failed login attempts")

    tenant = get_tenant_by_slug(db, slug)
    user = authenticate_user(db, tenant, payload.username, payload.password) if tenant else None
    if not tenant or not user:
        _record_login_failure(rl_key)
        logger.info("login_failed", tenant=slug, username=payload.username.strip().lower())
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    raw_token = create_session(db, user)
    _clear_login_failures(rl_key)
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=raw_token,
        max_age=max(1, int(settings.SESSION_TTL_HOURS)) * 3600,
        httponly=True,
        secure=bool(settings.SESSION_COOKIE_SECURE),
        samesite="lax",
        path="/",
    )
    logger.info("login_succeeded", tenant=tenant.slug, user_id=user.id)
    return _session_user_out(user, tenant)


@router.post("/auth/logout", response_model=LogoutOut)
def logout(
    response: Response,
    session_token: Optional[str] = Cookie(default=None, alias=settings.SESSION_COOKIE_NAME),
    db: Session = Depends(get_db),
):
    if session_token:
        session_row = find_session(db, session_token)
        if session_row:
            revoke_session(db, session_row)
    response.delete_cookie(key=settings.SESSION_COOKIE_NAME, path="/")
    return LogoutOut(ok=True)


@router.get("/auth/user", response_model=SessionUserOut)
def current_user(ctx: AuthContext = Depends(get_auth_context)):
    return _session_user_out(ctx.user, ctx.tenant)


@router.post("/admin/tenants", response_model=TenantProvisionOut, status_code=status.HTTP_201_CREATED)
def admin_provision_tenant(
    payload: TenantProvisionIn,
    x_admin_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    # Open when ADMIN_API_KEY is unset, as on a fresh local install.
    expected = (settings.ADMIN_API_KEY or "").strip()
    incoming = (x_admin_key or "").strip()
    if expected and not hmac.compare_digest(expected, incoming):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin API key")

    if get_tenant_by_slug(db, payload.slug):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Tenant slug already exists")
    try:
        tenant, admin = provision_tenant(
            db,
            slug=payload.slug,
            name=payload.name,
            admin_username=payload.admin_username,
            admin_password=payload.admin_password,
            admin_full_name=payload.admin_full_name,
            admin_email=payload.admin_email,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return TenantProvisionOut(
        tenant_id=tenant.id,
        slug=tenant.slug,
        name=tenant.name,
        admin_user_id=admin.id,
        admin_username=admin.username,
    )
