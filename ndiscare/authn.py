import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from fastapi import Cookie, Depends, Header, HTTPException, status
from passlib.context import CryptContext
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .models import AuthSession, Tenant, User

logger = structlog.get_logger("ndiscare.authn")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ROLE_SUPPORT_WORKER = "SupportWorker"
ROLE_TEAM_LEADER = "TeamLeader"
ROLE_COORDINATOR = "Coordinator"
ROLE_ADMIN = "Admin"
ROLE_CONSOLE_MANAGER = "ConsoleManager"
ROLES = (
    ROLE_SUPPORT_WORKER,
    ROLE_TEAM_LEADER,
    ROLE_COORDINATOR,
    ROLE_ADMIN,
    ROLE_CONSOLE_MANAGER,
)
MANAGER_ROLES = (ROLE_TEAM_LEADER, ROLE_COORDINATOR, ROLE_ADMIN)


@dataclass
class AuthContext:
    user: User
    tenant: Tenant
    session_id: int

    @property
    def tenant_id(self) -> int:
        return self.tenant.id

    @property
    def user_id(self) -> int:
        return self.user.id

    def has_role(self, *roles: str) -> bool:
        return self.user.role == ROLE_CONSOLE_MANAGER or self.user.role in roles


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def validate_password_policy(password: str) -> None:
    min_len = max(8, int(settings.AUTH_PASSWORD_MIN_LENGTH))
    if len(password or "") < min_len:
        raise ValueError(f"password must be at least {min_len} chars")


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(f"{settings.SESSION_SECRET}:{raw_token}".encode("utf-8")).hexdigest()


def get_user_by_username(db: Session, tenant_id: int, username: str) -> User | None:
    return db.execute(
        select(User).where(
            User.tenant_id == tenant_id,
            User.username == username.strip().lower(),
        )
    ).scalar_one_or_none()


def authenticate_user(db: Session, tenant: Tenant, username: str, password: str) -> User | None:
    row = get_user_by_username(db, tenant.id, username)
    if not row or not row.is_active:
        return None
    if not verify_password(password, row.password_hash):
        return None
    return row


def create_session(db: Session, user: User) -> str:
    raw = secrets.token_urlsafe(48)
    row = AuthSession(
        tenant_id=user.tenant_id,
        user_id=user.id,
        token_hash=hash_token(raw),
        is_revoked=False,
        expires_at=utc_now_naive() + timedelta(hours=max(1, int(settings.SESSION_TTL_HOURS))),
        created_at=utc_now_naive(),
    )
    db.add(row)
    db.commit()
    return raw


def find_session(db: Session, raw_token: str) -> AuthSession | None:
    return db.execute(
        select(AuthSession).where(AuthSession.token_hash == hash_token(raw_token))
    ).scalar_one_or_none()


def revoke_session(db: Session, session_row: AuthSession) -> None:
    if not session_row.is_revoked:
        session_row.is_revoked = True
        db.commit()


def revoke_all_sessions_for_user(db: Session, tenant_id: int, user_id: int) -> int:
    result = db.execute(
        update(AuthSession)
        .where(
            AuthSession.tenant_id == tenant_id,
            AuthSession.user_id == user_id,
            AuthSession.is_revoked.is_(False),
        )
        .values(is_revoked=True)
    )
    db.commit()
    return int(result.rowcount or 0)


def _unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def resolve_session(db: Session, raw_token: str | None, tenant_slug_hint: str | None = None) -> AuthContext:
    """Load the session behind a cookie token and re-check its tenant pairing.

    The user is looked up again on every request, scoped to the session's
    tenant. A user that vanished, was deactivated, or a request addressed to
    another tenant destroys the session.
    """
    if not raw_token:
        raise _unauthorized()
    session_row = find_session(db, raw_token)
    if not session_row or session_row.is_revoked:
        raise _unauthorized()
    if session_row.expires_at <= utc_now_naive():
        revoke_session(db, session_row)
        raise _unauthorized("Session expired")

    tenant = db.get(Tenant, session_row.tenant_id)
    user = db.execute(
        select(User).where(
            User.id == session_row.user_id,
            User.tenant_id == session_row.tenant_id,
        )
    ).scalar_one_or_none()

    hint = (tenant_slug_hint or "").strip().lower()
    mismatch = (
        tenant is None
        or user is None
        or not user.is_active
        or (hint and hint != tenant.slug)
    )
    if mismatch:
        logger.warning(
            "session_tenant_mismatch",
            session_id=session_row.id,
            session_tenant_id=session_row.tenant_id,
            session_user_id=session_row.user_id,
            requested_tenant=hint or None,
        )
        revoke_session(db, session_row)
        raise _unauthorized("Session no longer valid")

    session_row.last_seen_at = utc_now_naive()
    db.commit()

    structlog.contextvars.bind_contextvars(tenant=tenant.slug, user_id=user.id)
    return AuthContext(user=user, tenant=tenant, session_id=session_row.id)


def get_auth_context(
    db: Session = Depends(get_db),
    session_token: str | None = Cookie(default=None, alias=settings.SESSION_COOKIE_NAME),
    x_tenant_slug: str | None = Header(default=None),
) -> AuthContext:
    return resolve_session(db, session_token, x_tenant_slug)


def require_role(*roles: str):
    allowed = set(roles)

    def _dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not ctx.has_role(*allowed):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return ctx

    return _dependency


require_manager = require_role(*MANAGER_ROLES)
require_admin = require_role(ROLE_ADMIN)
