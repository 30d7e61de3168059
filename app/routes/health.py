"""
Health check endpoints for the queue backend, database pool and scheduler.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "backroom-reporting"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check with all dependencies including the reporting scheduler.
    """
    checks = {}
    overall_ok = True

    # 1) Redis health check
    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        latency_ms = round((time.time() - t0) * 1000, 1)
        checks["redis"] = {"ok": bool(redis_ok), "latency_ms": latency_ms}
        log_health_check("redis", bool(redis_ok), latency_ms)
        overall_ok = overall_ok and bool(redis_ok)
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Database pool health check
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        latency_ms = round((time.time() - t0) * 1000, 1)

        checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                }
            )

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check("database", is_healthy, latency_ms, error=checks["database"].get("error"))
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False

    # 3) Reporting scheduler (queue introspection and worker pool)
    reporting = getattr(request.app.state, "reporting", None)
    if reporting is None:
        checks["scheduler"] = {"ok": False, "error": "Reporting not initialized"}
        overall_ok = False
    else:
        scheduler_health = await reporting.scheduler.health_check(expect_workers=reporting.run_workers)
        scheduler_ok = scheduler_health["status"] == "healthy"
        checks["scheduler"] = {"ok": scheduler_ok, **scheduler_health}
        overall_ok = overall_ok and scheduler_ok

    # 4) Configuration checks
    config_issues = []
    config_warnings = []
    if not settings.DATABASE_URL:
        config_issues.append("DATABASE_URL not set")
    if not settings.REDIS_URL:
        config_issues.append("REDIS_URL not set")
    if not settings.RESEND_API_KEY:
        config_warnings.append("RESEND_API_KEY not set, report emails will fail")

    config_ok = not config_issues
    checks["configuration"] = {
        "ok": config_ok,
        "issues": config_issues or None,
        "warnings": config_warnings or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and config_ok

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()


@router.get("/health/scheduler")
async def scheduler_health(request: Request):
    """Composite queue backend, worker and queue introspection status."""
    reporting = getattr(request.app.state, "reporting", None)
    if reporting is None:
        return {"status": "unhealthy", "error": "Reporting not initialized"}
    return await reporting.scheduler.health_check(expect_workers=reporting.run_workers)
