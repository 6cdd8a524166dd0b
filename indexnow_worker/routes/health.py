"""Health check endpoints."""

import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/")
async def health_check():
    """Basic health check - always returns ok if service is running."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "indexnow-worker",
        "version": "0.1.0",
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness check including all dependencies.
    Redis only counts when the job queue is enabled.
    """
    registry = request.app.state.registry
    context = request.app.state.context

    checks = {
        "redis": await _check_redis(registry),
        "supabase": await _check_supabase(context.db),
    }
    overall_status = "ok"
    if any(check["status"] not in ("ok", "disabled") for check in checks.values()):
        overall_status = "degraded"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "config": {
            "job_queue_enabled": registry.enabled,
            "worker_mode": registry.settings.worker_mode,
            "redis_url": registry.settings.resolved_redis_url.split("@")[-1],
        },
    }


async def _check_redis(registry) -> dict:
    if not registry.enabled:
        return {"status": "disabled"}
    if not registry.is_connected:
        return {"status": "error", "error": "Not connected"}
    try:
        await asyncio.wait_for(registry.client.ping(), timeout=5.0)
        return {"status": "ok"}
    except asyncio.TimeoutError:
        return {"status": "timeout", "error": "Connection timed out"}
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return {"status": "error", "error": str(e)}


async def _check_supabase(db) -> dict:
    if await db.ping():
        return {"status": "ok", "url": db.base_url}
    return {"status": "error", "url": db.base_url}
