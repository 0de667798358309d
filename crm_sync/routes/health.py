"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Request

from crm_sync.infrastructure.observability.logging import get_logger, log_health_check

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "crm-sync"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check over the Redis client, the database pool and the local
    offline queue. Redis is optional: when disabled it reports as skipped.
    """
    state = request.app.state
    checks = {}
    overall_ok = True

    # 1) Redis
    redis_client = getattr(state, "redis", None)
    if redis_client is None:
        checks["redis"] = {"ok": True, "skipped": True}
    else:
        t0 = time.time()
        try:
            redis_ok = await redis_client.ping()
            latency_ms = round((time.time() - t0) * 1000, 1)
            checks["redis"] = {"ok": bool(redis_ok), "latency_ms": latency_ms}
            log_health_check("redis", bool(redis_ok), latency_ms)
            overall_ok = overall_ok and bool(redis_ok)
        except Exception as e:
            checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False

    # 2) Database pool
    t0 = time.time()
    db_health = await state.db_pool.health_check()
    is_healthy = bool(db_health.get("healthy", False))
    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if is_healthy:
        checks["database"].update(
            {
                "pool_size": db_health.get("pool_size", 0),
                "pool_available": db_health.get("pool_available", 0),
            }
        )
    else:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    # 3) Offline queue
    queue = state.queue
    try:
        counts = await queue.status_counts() if queue.is_open else None
        checks["queue"] = {"ok": counts is not None, "counts": counts}
        overall_ok = overall_ok and counts is not None
    except Exception as e:
        checks["queue"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    if not overall_ok:
        logger.warning("Readiness check failed", checks=checks)

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
