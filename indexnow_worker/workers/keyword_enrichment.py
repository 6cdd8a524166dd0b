"""Keyword-enrichment sweep. The enricher itself lives in services."""

from typing import Any

from indexnow_worker.jobs.schemas import KeywordEnrichmentJob, validate_payload
from indexnow_worker.queue.config import QUEUE_KEYWORD_ENRICHMENT
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.queue.registry import QueueRegistry
from .base import WorkerContext, sweep_lock


async def process_keyword_enrichment(job: Job, ctx: WorkerContext) -> dict[str, Any]:
    validate_payload(KeywordEnrichmentJob, job.data)
    async with sweep_lock(ctx, QUEUE_KEYWORD_ENRICHMENT) as acquired:
        if not acquired:
            return {"skipped": True, "processed": 0, "successful": 0, "total": 0}
        return await ctx.enricher.process_enrichment_job()


def initialize_keyword_enrichment_worker(registry: QueueRegistry, ctx: WorkerContext):
    async def processor(job: Job) -> dict[str, Any]:
        return await process_keyword_enrichment(job, ctx)

    return registry.register_worker(QUEUE_KEYWORD_ENRICHMENT, processor, concurrency=1)
