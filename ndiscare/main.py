from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from .api import router
from .api_ops import router as ops_router
from .auth_api import router as auth_router
from .billing_api import router as billing_router
from .config import settings
from .core.logging_config import setup_logging
from .core.middleware import RequestTracingMiddleware
from .db import Base, SessionLocal, engine, run_schema_migrations
from .observability import ping_redis
from .records_api import router as records_router

logger = structlog.get_logger("ndiscare.main")

_MAINTENANCE_BYPASS_PREFIXES = (
    "/health",
    "/ping",
    "/docs",
    "/redoc",
    "/openapi.json",
)
# Driver messages seen while PostgreSQL is still booting.
_DB_STARTING_MARKERS = (
    "not yet accepting connections",
    "starting up",
    "connection refused",
)


def _read_app_version() -> str:
    version_file = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        value = version_file.read_text(encoding="utf-8").strip()
        return value or "0.1.0"
    except OSError:
        return "0.1.0"


def is_db_starting_error(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in message for marker in _DB_STARTING_MARKERS)


setup_logging()
if settings.DATABASE_URL.startswith("sqlite"):
    Base.metadata.create_all(bind=engine)
elif bool(settings.DB_AUTO_CREATE_ALL):
    Base.metadata.create_all(bind=engine)
elif bool(settings.DB_SCHEMA_CHECK_ON_STARTUP):
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1 FROM tenants LIMIT 1"))
    except Exception as exc:
        raise RuntimeError("Database schema check failed. Run migrations before starting API.") from exc
_backfilled = run_schema_migrations()
if _backfilled:
    logger.info("schema_columns_backfilled", columns=_backfilled)

app = FastAPI(
    title="NDIS Care",
    description="Multi-tenant rostering, records and billing API for NDIS providers",
    version=_read_app_version(),
)
app.state.session_local = SessionLocal


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    if is_db_starting_error(exc):
        logger.warning("database_starting", error=str(exc.orig))
        return JSONResponse(
            status_code=503,
            content={"detail": "Database is starting up, please retry"},
            headers={"Retry-After": str(max(1, int(settings.DB_STARTUP_RETRY_AFTER_SECONDS)))},
        )
    logger.error("database_error", error=str(exc.orig))
    return JSONResponse(status_code=500, content={"detail": "Database error"})


@app.middleware("http")
async def maintenance_mode_middleware(request: Request, call_next):
    path = request.url.path or ""
    if bool(settings.MAINTENANCE_MODE):
        if not any(path.startswith(prefix) for prefix in _MAINTENANCE_BYPASS_PREFIXES):
            return JSONResponse(
                status_code=503,
                content={"detail": "Service temporarily unavailable: maintenance mode"},
                headers={"Retry-After": str(max(1, int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)))},
            )
    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


# Added last so it wraps the other middlewares.
app.add_middleware(RequestTracingMiddleware)


@app.get("/ping")
def ping():
    return {"ok": True}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {"db": "ok", "redis": ping_redis()}
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except OperationalError:
        checks["db"] = "error"

    if checks["db"] == "ok" and checks["redis"] != "error":
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(auth_router)
app.include_router(router)
app.include_router(records_router)
app.include_router(billing_router)
app.include_router(ops_router)
