from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock

import redis
import structlog

from .config import settings

logger = structlog.get_logger("ndiscare.observability")

_HTTP_EVENTS_MAX = 20000
_http_events: deque[dict] = deque(maxlen=_HTTP_EVENTS_MAX)
_events_lock = Lock()


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _redis_client() -> redis.Redis | None:
    redis_url = (settings.REDIS_URL or "").strip()
    if not redis_url:
        return None
    try:
        return redis.from_url(redis_url, decode_responses=True)
    except Exception:
        logger.warning("redis_client_unavailable", redis_url=redis_url)
        return None


def _stream_name() -> str:
    name = (settings.OPS_EVENTS_STREAM or "").strip()
    return name or "ndiscare.http_events"


def record_http_event(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: float,
    request_id: str,
    tenant_slug: str | None = None,
) -> None:
    event = {
        "ts": utc_now_naive(),
        "method": method.upper(),
        "path": path,
        "status_code": int(status_code),
        "duration_ms": float(duration_ms),
        "request_id": request_id,
        "tenant_slug": (tenant_slug or "").strip().lower() or None,
        "timeout_like": float(duration_ms) >= float(settings.OPS_TIMEOUT_LIKE_MS),
    }
    with _events_lock:
        _http_events.append(event)
    if not bool(settings.OPS_EVENTS_PERSIST_ENABLED):
        return
    client = _redis_client()
    if client is None:
        return
    try:
        client.xadd(
            _stream_name(),
            {
                "ts": event["ts"].isoformat() + "Z",
                "method": event["method"],
                "path": event["path"],
                "status_code": str(event["status_code"]),
                "duration_ms": str(event["duration_ms"]),
                "request_id": event["request_id"],
                "tenant_slug": event["tenant_slug"] or "",
                "timeout_like": "1" if event["timeout_like"] else "0",
            },
            maxlen=_HTTP_EVENTS_MAX * 5,
            approximate=True,
        )
    except redis.RedisError as exc:
        logger.warning("http_event_persist_failed", error=str(exc))


def clear_http_events() -> None:
    with _events_lock:
        _http_events.clear()


def _percentile(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    items = sorted(values)
    idx = int(round((len(items) - 1) * p))
    return float(items[max(0, min(idx, len(items) - 1))])


def get_ops_metrics_snapshot(window_minutes: int = 15) -> dict:
    cutoff = utc_now_naive() - timedelta(minutes=max(1, int(window_minutes)))
    with _events_lock:
        events = [e for e in list(_http_events) if e["ts"] >= cutoff]
    durations = [float(e["duration_ms"]) for e in events]

    by_status_class = {"2xx": 0, "3xx": 0, "4xx": 0, "5xx": 0}
    by_path: dict[str, int] = {}
    error_5xx_count = 0
    timeout_like_count = 0
    for e in events:
        status = int(e["status_code"])
        cls = f"{status // 100}xx"
        if cls in by_status_class:
            by_status_class[cls] += 1
        by_path[e["path"]] = by_path.get(e["path"], 0) + 1
        if status >= 500:
            error_5xx_count += 1
        if e.get("timeout_like"):
            timeout_like_count += 1

    top_paths = [
        {"path": path, "count": count}
        for path, count in sorted(by_path.items(), key=lambda x: (-x[1], x[0]))[:10]
    ]
    return {
        "window_minutes": int(window_minutes),
        "checked_at": utc_now_naive(),
        "requests_total": len(events),
        "error_5xx_count": error_5xx_count,
        "timeout_like_count": timeout_like_count,
        "latency_ms_p50": round(_percentile(durations, 0.50), 2),
        "latency_ms_p95": round(_percentile(durations, 0.95), 2),
        "by_status_class": by_status_class,
        "top_paths": top_paths,
    }


def ping_redis() -> str:
    redis_url = (settings.REDIS_URL or "").strip()
    if not redis_url:
        return "skipped"
    try:
        redis.from_url(redis_url, decode_responses=True).ping()
        return "ok"
    except Exception:
        return "error"
