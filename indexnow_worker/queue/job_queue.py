"""Redis-backed durable job queue.

Features:
- Wait set ordered by ready time (delayed jobs and retries share it)
- Retry with exponential backoff, fail-fast for permanent errors
- Failed-job store (DLQ) with manual retry
- Retention windows for completed and failed jobs
- Custom job ids for idempotent enqueue
- Repeatable (cron) registrations, at most one per job id
- Stalled-job recovery for crashed consumers
- Advisory locks with owner tokens

Redis layout for queue ``q`` under prefix ``p``::

    p:q:job:<id>     job record (JSON)
    p:q:wait         zset  id -> ready timestamp
    p:q:active       zset  id -> start timestamp
    p:q:completed    zset  id -> finish timestamp
    p:q:failed       zset  id -> finish timestamp
    p:q:repeat       hash  job id -> registration (JSON)
    p:lock:<name>    advisory lock
"""

import json
import os
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Literal, Optional, Union

import logging
import redis.asyncio as redis
from pydantic import BaseModel, Field

from indexnow_worker.errors import is_permanent
from .config import COMPLETED_KEEP_COUNT, COMPLETED_KEEP_SECONDS, FAILED_KEEP_SECONDS
from .cron import next_fire_timestamp

logger = logging.getLogger(__name__)


class Backoff(BaseModel):
    """Retry delay policy."""
    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = 2000

    def get_delay(self, attempts_made: int) -> float:
        """Delay in seconds before the retry that follows attempt ``attempts_made``."""
        if self.type == "fixed":
            return self.delay_ms / 1000
        return (self.delay_ms / 1000) * (2 ** max(attempts_made - 1, 0))


class RetentionPolicy(BaseModel):
    """Keep finished jobs for ``age_seconds`` and/or at most ``count`` entries."""
    age_seconds: Optional[int] = None
    count: Optional[int] = None


class RepeatOptions(BaseModel):
    pattern: str
    tz: str = "UTC"


class JobOptions(BaseModel):
    """Per-job options; unset fields fall back to the queue defaults."""
    attempts: int = 3
    backoff: Backoff = Field(default_factory=Backoff)
    delay_seconds: float = 0
    priority: int = 0
    remove_on_complete: RetentionPolicy = Field(
        default_factory=lambda: RetentionPolicy(age_seconds=COMPLETED_KEEP_SECONDS, count=COMPLETED_KEEP_COUNT)
    )
    remove_on_fail: RetentionPolicy = Field(
        default_factory=lambda: RetentionPolicy(age_seconds=FAILED_KEEP_SECONDS)
    )


DEFAULT_JOB_OPTIONS = JobOptions()


class JobStatus(str, Enum):
    """Job status states."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class Job(BaseModel):
    """A job record as stored in Redis."""
    id: str
    name: str
    queue: str
    data: dict[str, Any]
    opts: JobOptions = Field(default_factory=JobOptions)
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    created_at: str
    processed_at: Optional[str] = None
    finished_at: Optional[str] = None
    return_value: Optional[Any] = None
    failed_reason: Optional[str] = None
    error_history: list[str] = []


class RepeatableJob(BaseModel):
    """A cron registration that yields one job per fire time."""
    key: str
    name: str
    pattern: str
    tz: str = "UTC"
    data: dict[str, Any] = {}
    opts: JobOptions = Field(default_factory=JobOptions)
    next_run_at: float


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class JobQueue:
    """Enqueue and consume side of one named queue."""

    def __init__(
        self,
        name: str,
        client: redis.Redis,
        prefix: str = "indexnow",
        default_options: Optional[JobOptions] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self._redis = client
        self.prefix = prefix
        self.default_options = default_options or DEFAULT_JOB_OPTIONS
        self._clock = clock

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _build_options(self, **overrides) -> JobOptions:
        values = {k: v for k, v in overrides.items() if v is not None}
        return self.default_options.model_copy(update=values)

    # ==================== Enqueue ====================

    async def add(
        self,
        name: str,
        data: dict,
        *,
        job_id: Optional[str] = None,
        delay_seconds: Optional[float] = None,
        priority: Optional[int] = None,
        attempts: Optional[int] = None,
        backoff: Optional[Backoff] = None,
        repeat: Optional[RepeatOptions] = None,
    ) -> Union[Job, RepeatableJob]:
        """
        Add a job to the queue.

        Args:
            name: Job name (handler-visible label)
            data: JSON-serialisable payload
            job_id: Custom id; adding an id that already exists is a no-op
            delay_seconds: Delay before the job becomes available
            priority: Higher priority jobs are claimed first among ready jobs
            attempts: Total attempts including the first
            backoff: Retry delay policy
            repeat: Register a repeatable job instead of enqueuing one

        Returns:
            The created (or already existing) Job, or the RepeatableJob registration
        """
        opts = self._build_options(
            delay_seconds=delay_seconds, priority=priority, attempts=attempts, backoff=backoff
        )
        if repeat is not None:
            return await self.add_repeatable(name, data, repeat, key=job_id, opts=opts)

        job, created = await self._create_job(name, data, opts, job_id)
        if not created:
            logger.info(f"Job {job.id} already exists in {self.name}, not enqueued again")
        return job

    async def add_unique(self, name: str, data: dict, job_id: str, **options) -> bool:
        """Add a job under ``job_id``; returns False if that id already exists."""
        _, created = await self._create_job(name, data, self._build_options(**options), job_id)
        return created

    async def _create_job(
        self, name: str, data: dict, opts: JobOptions, job_id: Optional[str]
    ) -> tuple[Job, bool]:
        now = self._clock()
        job_id = job_id or f"{name}_{int(now * 1000)}_{os.urandom(4).hex()}"
        job = Job(
            id=job_id,
            name=name,
            queue=self.name,
            data=data,
            opts=opts,
            status=JobStatus.DELAYED if opts.delay_seconds > 0 else JobStatus.WAITING,
            created_at=_iso(now),
        )

        created = await self._redis.set(self._job_key(job_id), job.model_dump_json(), nx=True)
        if not created:
            existing = await self.get_job(job_id)
            return (existing or job), False

        score = now + opts.delay_seconds - opts.priority
        await self._redis.zadd(self._key("wait"), {job_id: score})
        logger.info(f"Enqueued job {job_id} ({name}) to {self.name}")
        return job, True

    # ==================== Repeatable Jobs ====================

    async def add_repeatable(
        self,
        name: str,
        data: dict,
        repeat: RepeatOptions,
        key: Optional[str] = None,
        opts: Optional[JobOptions] = None,
    ) -> RepeatableJob:
        """
        Register a repeatable job. A registration with the same key is kept as is.

        Raises:
            ValueError: invalid cron pattern
        """
        key = key or name
        registration = RepeatableJob(
            key=key,
            name=name,
            pattern=repeat.pattern,
            tz=repeat.tz,
            data=data,
            opts=opts or self.default_options,
            next_run_at=next_fire_timestamp(repeat.pattern, repeat.tz, self._clock()),
        )
        created = await self._redis.hsetnx(self._key("repeat"), key, registration.model_dump_json())
        if not created:
            logger.info(f"Repeatable job {key} already registered on {self.name}")
            existing = await self._redis.hget(self._key("repeat"), key)
            return RepeatableJob.model_validate_json(existing) if existing else registration

        logger.info(
            f"Registered repeatable job {key} on {self.name} "
            f"({repeat.pattern} {repeat.tz}, next at {_iso(registration.next_run_at)})"
        )
        return registration

    async def get_repeatable_jobs(self) -> list[RepeatableJob]:
        raw = await self._redis.hgetall(self._key("repeat"))
        return [RepeatableJob.model_validate_json(value) for value in raw.values()]

    async def remove_repeatable(self, key: str) -> bool:
        removed = await self._redis.hdel(self._key("repeat"), key)
        if removed:
            logger.info(f"Removed repeatable job {key} from {self.name}")
        return bool(removed)

    async def promote_repeatables(self) -> int:
        """
        Enqueue one job for every registration that is due and advance it.

        The job id is derived from the fire time, so concurrent promoters
        enqueue a given tick only once.

        Returns:
            Number of jobs enqueued by this call
        """
        now = self._clock()
        promoted = 0
        for registration in await self.get_repeatable_jobs():
            if registration.next_run_at > now:
                continue

            fire_ms = int(registration.next_run_at * 1000)
            _, created = await self._create_job(
                registration.name,
                self._fire_payload(registration),
                registration.opts,
                job_id=f"repeat:{registration.key}:{fire_ms}",
            )
            if created:
                promoted += 1

            registration.next_run_at = next_fire_timestamp(registration.pattern, registration.tz, now)
            await self._redis.hset(self._key("repeat"), registration.key, registration.model_dump_json())

        return promoted

    @staticmethod
    def _fire_payload(registration: RepeatableJob) -> dict[str, Any]:
        data = dict(registration.data)
        if "scheduledAt" in data:
            data["scheduledAt"] = _iso(registration.next_run_at)
        return data

    # ==================== Consume ====================

    async def dequeue(self) -> Optional[Job]:
        """
        Claim the next ready job.

        Returns:
            Job object or None if no job is ready
        """
        now = self._clock()
        ready = await self._redis.zrangebyscore(self._key("wait"), "-inf", now, start=0, num=1)
        if not ready:
            return None

        job_id = ready[0]
        # zrem is the claim; a concurrent consumer that loses gets 0
        if not await self._redis.zrem(self._key("wait"), job_id):
            return None

        job = await self.get_job(job_id)
        if not job:
            logger.warning(f"Job {job_id} not found in storage")
            return None

        job.status = JobStatus.ACTIVE
        job.processed_at = _iso(now)
        job.attempts_made += 1
        await self._save(job)
        await self._redis.zadd(self._key("active"), {job_id: now})

        logger.debug(f"Dequeued job {job_id} from {self.name} (attempt {job.attempts_made})")
        return job

    async def heartbeat(self, job: Job) -> bool:
        """
        Refresh the active timestamp of a running job so it is not treated as stalled.

        Returns:
            False once the job is no longer in the active set
        """
        active = self._key("active")
        if await self._redis.zscore(active, job.id) is None:
            return False
        # xx: never re-adds a job that finished in between
        await self._redis.zadd(active, {job.id: self._clock()}, xx=True)
        return True

    async def complete(self, job: Job, result: Any = None) -> None:
        """Mark a job as completed successfully."""
        now = self._clock()
        job.status = JobStatus.COMPLETED
        job.finished_at = _iso(now)
        job.return_value = result

        await self._save(job)
        await self._redis.zrem(self._key("active"), job.id)
        # A stalled-recovery requeue of this attempt must not run it again
        await self._redis.zrem(self._key("wait"), job.id)
        await self._redis.zadd(self._key("completed"), {job.id: now})
        await self._trim(self._key("completed"), job.opts.remove_on_complete)

    async def fail(self, job: Job, error: BaseException) -> bool:
        """
        Record a failed attempt.

        Permanent errors and exhausted attempts move the job to the failed
        store. Otherwise it is re-queued after its backoff delay.

        Returns:
            True if the job will be retried
        """
        now = self._clock()
        reason = str(error) or error.__class__.__name__
        job.failed_reason = reason
        job.error_history.append(f"[{_iso(now)}] {error.__class__.__name__}: {reason}")
        await self._redis.zrem(self._key("active"), job.id)
        await self._redis.zrem(self._key("wait"), job.id)

        if not is_permanent(error) and job.attempts_made < job.opts.attempts:
            delay = job.opts.backoff.get_delay(job.attempts_made)
            job.status = JobStatus.DELAYED
            await self._save(job)
            await self._redis.zadd(self._key("wait"), {job.id: now + delay})
            logger.warning(
                f"Job {job.id} failed, retry {job.attempts_made}/{job.opts.attempts} in {delay:.0f}s: {reason}"
            )
            return True

        await self._move_to_failed(job, now)
        return False

    async def _move_to_failed(self, job: Job, now: float) -> None:
        job.status = JobStatus.FAILED
        job.finished_at = _iso(now)
        await self._save(job)
        await self._redis.zadd(self._key("failed"), {job.id: now})
        await self._trim(self._key("failed"), job.opts.remove_on_fail)
        logger.error(f"Job {job.id} failed after {job.attempts_made} attempt(s): {job.failed_reason}")

    async def recover_stalled(self, stalled_after_seconds: float) -> int:
        """
        Return jobs whose consumer vanished to the wait set.

        A job is stalled once its active timestamp, refreshed by the
        consumer's heartbeat, is older than ``stalled_after_seconds``. A
        stalled attempt still counts; a job with no attempts left is failed.
        """
        now = self._clock()
        stalled = await self._redis.zrangebyscore(self._key("active"), "-inf", now - stalled_after_seconds)
        recovered = 0
        for job_id in stalled:
            if not await self._redis.zrem(self._key("active"), job_id):
                continue
            job = await self.get_job(job_id)
            if not job:
                continue
            if job.attempts_made >= job.opts.attempts:
                job.failed_reason = "job stalled more than allowable limit"
                job.error_history.append(f"[{_iso(now)}] {job.failed_reason}")
                await self._move_to_failed(job, now)
                continue
            job.status = JobStatus.WAITING
            await self._save(job)
            await self._redis.zadd(self._key("wait"), {job_id: now})
            recovered += 1
            logger.warning(f"Recovered stalled job {job_id} on {self.name}")
        return recovered

    # ==================== Failed Jobs ====================

    async def get_failed_jobs(self, limit: int = 100) -> list[Job]:
        """Most recently failed jobs first."""
        job_ids = await self._redis.zrange(self._key("failed"), 0, -1)
        jobs = []
        for job_id in reversed(job_ids):
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
            if len(jobs) >= limit:
                break
        return jobs

    async def retry_failed(self, job_id: str) -> Optional[Job]:
        """Move a failed job back to the wait set with a fresh attempt budget."""
        job = await self.get_job(job_id)
        if not job or job.status != JobStatus.FAILED:
            return None

        job.status = JobStatus.WAITING
        job.attempts_made = 0
        job.failed_reason = None
        job.finished_at = None
        job.processed_at = None
        await self._save(job)
        await self._redis.zrem(self._key("failed"), job_id)
        await self._redis.zadd(self._key("wait"), {job_id: self._clock()})

        logger.info(f"Job {job_id} retried from failed store of {self.name}")
        return job

    # ==================== Inspection ====================

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self._redis.get(self._job_key(job_id))
        if not data:
            return None
        return Job.model_validate_json(data)

    async def get_counts(self) -> dict[str, int]:
        """Number of jobs per state."""
        now = self._clock()
        return {
            "waiting": await self._redis.zcount(self._key("wait"), "-inf", now),
            "delayed": await self._redis.zcount(self._key("wait"), f"({now}", "+inf"),
            "active": await self._redis.zcard(self._key("active")),
            "completed": await self._redis.zcard(self._key("completed")),
            "failed": await self._redis.zcard(self._key("failed")),
            "repeatable": await self._redis.hlen(self._key("repeat")),
        }

    # ==================== Distributed Locking ====================

    def _lock_key(self, name: str) -> str:
        return f"{self.prefix}:lock:{name}"

    async def acquire_lock(self, name: str, ttl_seconds: int) -> Optional[str]:
        """
        Acquire an expiring advisory lock.

        Returns:
            Owner token, or None if the lock is already held
        """
        token = os.urandom(8).hex()
        now = self._clock()
        acquired = await self._redis.set(
            self._lock_key(name),
            json.dumps({
                "token": token,
                "locked_at": _iso(now),
                "expires_at": _iso(now + ttl_seconds),
            }),
            nx=True,
            ex=ttl_seconds,
        )
        if acquired:
            logger.info(f"Acquired lock {name}")
            return token
        logger.info(f"Lock {name} already held")
        return None

    async def release_lock(self, name: str, token: str) -> bool:
        """Release a lock only if ``token`` still owns it."""
        key = self._lock_key(name)
        data = await self._redis.get(key)
        if not data or json.loads(data).get("token") != token:
            return False
        await self._redis.delete(key)
        logger.info(f"Released lock {name}")
        return True

    async def get_lock_info(self, name: str) -> Optional[dict]:
        data = await self._redis.get(self._lock_key(name))
        return json.loads(data) if data else None

    # ==================== Internals ====================

    async def _save(self, job: Job) -> None:
        await self._redis.set(self._job_key(job.id), job.model_dump_json())

    async def _trim(self, set_key: str, policy: RetentionPolicy) -> None:
        """Drop finished jobs outside the retention window."""
        expired: list[str] = []
        if policy.age_seconds is not None:
            cutoff = self._clock() - policy.age_seconds
            expired.extend(await self._redis.zrangebyscore(set_key, "-inf", cutoff))
        if policy.count is not None:
            total = await self._redis.zcard(set_key)
            overflow = total - policy.count
            if overflow > 0:
                expired.extend(await self._redis.zrange(set_key, 0, overflow - 1))

        for job_id in set(expired):
            await self._redis.zrem(set_key, job_id)
            await self._redis.delete(self._job_key(job_id))
