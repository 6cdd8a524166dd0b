"""Queue inspection and failed-job retry endpoints (service token required)."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from indexnow_worker.queue.config import ALL_QUEUES
from indexnow_worker.workers import get_background_services_status

router = APIRouter()
logger = logging.getLogger(__name__)


def require_service_token(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    expected = request.app.state.registry.settings.service_token
    if not expected:
        raise HTTPException(status_code=503, detail="SERVICE_TOKEN not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid or missing service token")


def _registry(request: Request):
    registry = request.app.state.registry
    if not registry.enabled:
        raise HTTPException(status_code=503, detail="Job queue is disabled")
    if not registry.is_connected:
        raise HTTPException(status_code=503, detail="Redis unavailable")
    return registry


def _known_queue(name: str) -> str:
    if name not in ALL_QUEUES:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {name}")
    return name


@router.get("/status", dependencies=[Depends(require_service_token)])
async def queue_status(request: Request):
    """Background services status plus job counts per queue."""
    registry = request.app.state.registry
    status = await get_background_services_status(registry)
    if registry.enabled and registry.is_connected:
        status["queues"] = await registry.get_stats()
    else:
        status["queues"] = {}
    return status


@router.get("/{name}/failed", dependencies=[Depends(require_service_token)])
async def list_failed_jobs(name: str, request: Request, limit: int = 50):
    registry = _registry(request)
    jobs = await registry.get_failed_jobs(_known_queue(name), limit=min(max(limit, 1), 500))
    return {
        "queue": name,
        "count": len(jobs),
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "attempts_made": job.attempts_made,
                "failed_reason": job.failed_reason,
                "finished_at": job.finished_at,
                "error_history": job.error_history,
            }
            for job in jobs
        ],
    }


@router.post("/{name}/failed/{job_id}/retry", dependencies=[Depends(require_service_token)])
async def retry_failed_job(name: str, job_id: str, request: Request):
    registry = _registry(request)
    job = await registry.get_queue(_known_queue(name)).retry_failed(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No failed job {job_id} in {name}")
    logger.info(f"Failed job {job_id} on {name} re-queued via API")
    return {"queue": name, "id": job.id, "status": job.status.value}
