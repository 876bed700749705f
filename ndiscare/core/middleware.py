import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from ..observability import record_http_event
from ..request_context import request_id_ctx

logger = structlog.get_logger("ndiscare.middleware")


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Binds request_id, path and method into the structlog context and
    records every request in the ops event buffer."""

    async def dispatch(self, request: Request, call_next):
        request_id = (request.headers.get("X-Request-ID") or "").strip() or str(uuid.uuid4())
        tenant_slug = (request.headers.get("x-tenant-slug") or "").strip().lower() or None

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
        )
        token = request_id_ctx.set(request_id)

        start_time = time.perf_counter()

        try:
            response: Response = await call_next(request)
        except Exception as exc:
            request_id_ctx.reset(token)
            duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
            record_http_event(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
                request_id=request_id,
                tenant_slug=tenant_slug,
            )
            logger.error(
                "request_failed",
                error=str(exc),
                duration_ms=duration_ms,
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"X-Request-ID": request_id},
            )

        request_id_ctx.reset(token)
        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        record_http_event(
            method=request.method,
            path=request.url.path,
            status_code=int(response.status_code),
            duration_ms=duration_ms,
            request_id=request_id,
            tenant_slug=tenant_slug,
        )
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_finished",
            status=response.status_code,
            duration_ms=duration_ms,
        )

        return response
