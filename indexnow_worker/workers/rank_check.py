"""Rank-check worker: look up a keyword's position and record it.

Steps, each recorded in the job's step ledger:

1. load the keyword (scoped to its owner) and check its rank
2. move ``position`` to ``previous_position`` and store the new position
3. append one history row
4. consume one unit of the owner's daily quota

A retry reuses the recorded check and skips steps already applied, so
``previous_position`` is never overwritten twice and no duplicate history
row is written.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from indexnow_worker.errors import NotFoundError
from indexnow_worker.jobs.schemas import RankCheckJob, validate_payload
from indexnow_worker.lib.json_logger import job_logger
from indexnow_worker.lib.timeouts import run_with_timeout
from indexnow_worker.queue.config import QUEUE_RANK_CHECK
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.queue.registry import QueueRegistry
from indexnow_worker.services.rank_tracker import RankResult
from .base import WorkerContext

logger = logging.getLogger(__name__)


async def process_rank_check(job: Job, ctx: WorkerContext) -> dict[str, Any]:
    payload = validate_payload(RankCheckJob, job.data)
    keyword_id = str(payload.keywordId)
    user_id = str(payload.userId)
    log = job_logger(job.id, job.name, job.queue, job.attempts_made).with_context(
        keyword_id=keyword_id, user_id=user_id
    )
    ledger = ctx.ledger_for(job.id)

    async def check() -> dict[str, Any]:
        row = await ctx.rank_keywords.get_keyword(keyword_id, user_id)
        if not row:
            raise NotFoundError(f"Keyword {keyword_id} not found for user {user_id}")
        if not row.get("domain"):
            raise NotFoundError(f"Keyword {keyword_id} has no domain to track")

        country = (row.get("country") or payload.countryCode).lower()
        device = row.get("device") or payload.device.value
        result = await run_with_timeout(
            ctx.rank_tracker.check_rank(row.get("keyword") or payload.keyword, row["domain"], country, device),
            ctx.timeout,
            "rank_tracker.check_rank",
        )
        return {
            "previous_position": row.get("position"),
            "checked_at": datetime.now(timezone.utc).isoformat(),
            "result": result.to_dict(),
        }

    checked = await ledger.run("rank_checked", check)
    result = RankResult.from_dict(checked["result"])
    checked_at = checked["checked_at"]

    async def update_position() -> bool:
        await ctx.rank_keywords.update_position(
            keyword_id, result.position, checked["previous_position"], checked_at
        )
        return True

    async def insert_history() -> bool:
        await ctx.rank_keywords.insert_history({
            "keyword_id": keyword_id,
            "position": result.position,
            "url": result.url,
            "device": result.device,
            "country_code": result.country.lower(),
            "check_date": checked_at[:10],
            "checked_at": checked_at,
            "metadata": {
                "title": result.title,
                "found_in_top_100": result.found_in_top_100,
                "job_id": job.id,
            },
        })
        return True

    await ledger.run("position_updated", update_position)
    await ledger.run("history_inserted", insert_history)
    quota_consumed = await ledger.run("quota_consumed", lambda: ctx.quota_service.consume_quota(user_id, 1))

    log.info(
        f"Rank check done: position {result.position} (was {checked['previous_position']})",
        extra={"status": "completed"},
    )
    return {
        "keywordId": keyword_id,
        "position": result.position,
        "previousPosition": checked["previous_position"],
        "url": result.url,
        "foundInTop100": result.found_in_top_100,
        "quotaConsumed": quota_consumed,
    }


def initialize_rank_check_worker(registry: QueueRegistry, ctx: WorkerContext):
    """Rank checks: concurrency 5, at most 28 starts per minute by default."""
    async def processor(job: Job) -> dict[str, Any]:
        return await process_rank_check(job, ctx)

    return registry.register_worker(QUEUE_RANK_CHECK, processor)
