"""Daily fan-out of rank checks for every active keyword."""

import logging
from typing import Any

from indexnow_worker.db.repositories import start_of_day_utc
from indexnow_worker.jobs.schemas import DailyRankCheckJob, validate_payload
from indexnow_worker.lib.json_logger import job_logger
from indexnow_worker.queue.config import QUEUE_RANK_CHECK, QUEUE_RANK_SCHEDULE
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.queue.registry import QueueRegistry
from .base import WorkerContext, sweep_lock

logger = logging.getLogger(__name__)


def rank_check_job_id(keyword_id: str, day: str) -> str:
    """One rank check per keyword per day."""
    return f"rank-check:{keyword_id}:{day}"


async def process_daily_rank_check(job: Job, ctx: WorkerContext) -> dict[str, Any]:
    payload = validate_payload(DailyRankCheckJob, job.data)
    log = job_logger(job.id, job.name, job.queue, job.attempts_made)
    batch_size = payload.batchSize or ctx.settings.daily_rank_check_batch_size

    async with sweep_lock(ctx, QUEUE_RANK_SCHEDULE) as acquired:
        if not acquired:
            return {"skipped": True, "enqueued": 0, "totalFound": 0}

        midnight = start_of_day_utc()
        day = midnight.date().isoformat()
        keywords = await ctx.rank_keywords.find_due_for_check(midnight.isoformat(), batch_size)
        rank_queue = ctx.registry.get_queue(QUEUE_RANK_CHECK)

        enqueued = 0
        for row in keywords:
            domain_id = await ctx.rank_keywords.get_domain_id(row["user_id"], row["domain"])
            if not domain_id:
                log.warning(f"Keyword {row['id']} has no tracked domain {row.get('domain')}, skipping")
                continue
            job_id = rank_check_job_id(row["id"], day)
            created = await rank_queue.add_unique(
                "rank-check",
                {
                    "keywordId": row["id"],
                    "userId": row["user_id"],
                    "domainId": domain_id,
                    "keyword": row["keyword"],
                    "countryCode": (row.get("country") or "us").lower(),
                    "device": row.get("device") or "desktop",
                },
                job_id,
            )
            if created:
                enqueued += 1

        log.info(f"Daily rank check enqueued {enqueued} of {len(keywords)} due keyword(s)")
        return {"enqueued": enqueued, "totalFound": len(keywords)}


def initialize_rank_schedule_worker(registry: QueueRegistry, ctx: WorkerContext):
    async def processor(job: Job) -> dict[str, Any]:
        return await process_daily_rank_check(job, ctx)

    return registry.register_worker(QUEUE_RANK_SCHEDULE, processor, concurrency=1)
