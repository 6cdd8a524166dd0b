"""Quota-reset sweep, fired hourly and every 15 minutes around midnight."""

from typing import Any

from indexnow_worker.jobs.schemas import QuotaResetJob, validate_payload
from indexnow_worker.queue.config import QUEUE_QUOTA_RESET
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.queue.registry import QueueRegistry
from .base import WorkerContext, sweep_lock


async def process_quota_reset(job: Job, ctx: WorkerContext) -> dict[str, Any]:
    validate_payload(QuotaResetJob, job.data)
    async with sweep_lock(ctx, QUEUE_QUOTA_RESET) as acquired:
        if not acquired:
            return {"skipped": True}
        return await ctx.quota_monitor.check_and_reactivate_accounts()


def initialize_quota_reset_worker(registry: QueueRegistry, ctx: WorkerContext):
    async def processor(job: Job) -> dict[str, Any]:
        return await process_quota_reset(job, ctx)

    return registry.register_worker(QUEUE_QUOTA_RESET, processor, concurrency=1)
