"""Idempotent registration of repeatable (cron) jobs."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import (
    QUEUE_AUTO_CANCEL,
    QUEUE_KEYWORD_ENRICHMENT,
    QUEUE_QUOTA_RESET,
    QUEUE_RANK_SCHEDULE,
)
from .cron import build_trigger
from .job_queue import JobQueue, RepeatableJob, RepeatOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Schedule:
    """A repeatable job that the bootstrap registers on startup."""
    queue: str
    job_id: str
    pattern: str
    # Builds the payload at registration time
    payload: Callable[[], dict[str, Any]] = field(default=lambda: {})


def _scheduled_at() -> dict[str, Any]:
    return {"scheduledAt": datetime.now(timezone.utc).isoformat()}


SCHEDULES: list[Schedule] = [
    Schedule(QUEUE_AUTO_CANCEL, "auto-cancel-expired-transactions", "0 * * * *", _scheduled_at),
    Schedule(QUEUE_KEYWORD_ENRICHMENT, "keyword-enrichment-check", "30 * * * *", _scheduled_at),
    Schedule(QUEUE_QUOTA_RESET, "quota-reset-hourly", "5 * * * *", _scheduled_at),
    # Around midnight: 23:00-00:45 every 15 minutes
    Schedule(QUEUE_QUOTA_RESET, "quota-reset-midnight", "*/15 23,0 * * *", _scheduled_at),
    Schedule(QUEUE_RANK_SCHEDULE, "daily-rank-check", "0 2 * * *", _scheduled_at),
]


async def ensure_repeatable_job(
    queue: JobQueue,
    job_id: str,
    pattern: str,
    data: Optional[dict[str, Any]] = None,
    tz: str = "UTC",
) -> Optional[RepeatableJob]:
    """
    Register a repeatable job unless one with the same id already exists.

    An existing registration with a different pattern or time zone is
    replaced, so an edited SCHEDULES entry takes effect on the next boot.

    Returns:
        The new registration, or None if an identical one was already present

    Raises:
        ValueError: invalid cron pattern
    """
    build_trigger(pattern, tz)

    current = next((job for job in await queue.get_repeatable_jobs() if job.key == job_id), None)
    if current is not None:
        if (current.pattern, current.tz) == (pattern, tz):
            logger.info(f"Repeatable job {job_id} already scheduled on {queue.name}, skipping")
            return None
        logger.info(
            f"Repeatable job {job_id} on {queue.name} changed from {current.pattern} {current.tz}, re-registering"
        )
        await queue.remove_repeatable(job_id)

    registration = await queue.add(
        job_id,
        data or {},
        job_id=job_id,
        repeat=RepeatOptions(pattern=pattern, tz=tz),
    )
    logger.info(f"Scheduled repeatable job {job_id} on {queue.name} ({pattern} {tz})")
    return registration


async def schedule_all(registry, tz: str = "UTC") -> list[str]:
    """Register every entry of SCHEDULES; returns the ids newly registered."""
    registered = []
    for schedule in SCHEDULES:
        queue = registry.get_queue(schedule.queue)
        if await ensure_repeatable_job(queue, schedule.job_id, schedule.pattern, schedule.payload(), tz):
            registered.append(schedule.job_id)
    return registered


async def get_scheduled_jobs(registry) -> list[dict[str, Any]]:
    """Registered repeatable jobs across all scheduled queues."""
    result = []
    for queue_name in sorted({s.queue for s in SCHEDULES}):
        for job in await registry.get_queue(queue_name).get_repeatable_jobs():
            result.append({
                "queue": queue_name,
                "key": job.key,
                "pattern": job.pattern,
                "tz": job.tz,
                "next_run_at": datetime.fromtimestamp(job.next_run_at, tz=timezone.utc).isoformat(),
            })
    return result
