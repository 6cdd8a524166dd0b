"""Queue registry: owns the Redis connection, named queues and their workers."""

import logging
from typing import Optional

import redis.asyncio as redis

from indexnow_worker.config import Settings, get_settings
from indexnow_worker.errors import QueueDisabledError
from .config import ALL_QUEUES, RateLimit, get_queue_settings
from .job_queue import DEFAULT_JOB_OPTIONS, Job, JobOptions, JobQueue, RepeatableJob
from .rate_limiter import RateLimiter
from .worker import Processor, QueueWorker

logger = logging.getLogger(__name__)


class QueueRegistry:
    """
    Process-wide handle on the job queue subsystem.

    At most one worker per queue is registered per process; queues are
    created lazily on first use.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[redis.Redis] = None,
        default_options: JobOptions = DEFAULT_JOB_OPTIONS,
    ):
        self.settings = settings or get_settings()
        self._redis = client
        self.default_options = default_options
        self._queues: dict[str, JobQueue] = {}
        self._workers: dict[str, QueueWorker] = {}

    @property
    def enabled(self) -> bool:
        return self.settings.enable_job_queue

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    def _ensure_enabled(self) -> None:
        if not self.enabled:
            raise QueueDisabledError("Job queue is disabled (ENABLE_JOB_QUEUE=false)")

    async def connect(self) -> bool:
        """Connect to Redis. Returns True if connected, False if unavailable."""
        if not self.enabled:
            return False
        if self._redis is not None:
            return True
        url = self.settings.resolved_redis_url
        try:
            client = redis.from_url(url, encoding="utf-8", decode_responses=True)
            await client.ping()
        except Exception as e:
            logger.warning(f"Redis unavailable at {url.split('@')[-1]}: {e}")
            return False
        self._redis = client
        logger.info(f"Connected to Redis at {url.split('@')[-1]}")
        return True

    def _client(self) -> redis.Redis:
        self._ensure_enabled()
        if self._redis is None:
            raise ConnectionError("Redis unavailable - call connect() first")
        return self._redis

    @property
    def client(self) -> redis.Redis:
        """The shared Redis connection (raises if disabled or not connected)."""
        return self._client()

    # ==================== Queues ====================

    def get_queue(self, queue_name: str) -> JobQueue:
        """Enqueue-side handle for a queue, created on first use."""
        client = self._client()
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = JobQueue(
                queue_name,
                client,
                prefix=self.settings.queue_prefix,
                default_options=self.default_options,
            )
            self._queues[queue_name] = queue
        return queue

    async def enqueue_job(self, queue_name: str, job_name: str, data: dict, **options) -> str:
        """Add a job and return its id."""
        job = await self.get_queue(queue_name).add(job_name, data, **options)
        if isinstance(job, RepeatableJob):
            return job.key
        return job.id

    # ==================== Workers ====================

    def register_worker(
        self,
        queue_name: str,
        processor: Processor,
        concurrency: Optional[int] = None,
        limiter: Optional[RateLimit] = None,
    ) -> QueueWorker:
        """
        Bind a processor to a queue.

        Concurrency and limiter default to the per-queue settings. A second
        registration for the same queue returns the existing worker.
        """
        existing = self._workers.get(queue_name)
        if existing is not None:
            logger.warning(f"Worker for {queue_name} already registered, reusing it")
            return existing

        queue = self.get_queue(queue_name)
        defaults = get_queue_settings(self.settings).get(queue_name)
        if concurrency is None:
            concurrency = defaults.concurrency if defaults else 1
        if limiter is None and defaults is not None:
            limiter = defaults.limiter

        worker = QueueWorker(
            queue,
            processor,
            concurrency=concurrency,
            limiter=RateLimiter(self._client(), f"{self.settings.queue_prefix}:{queue_name}:limiter", limiter)
            if limiter else None,
            poll_interval=self.settings.worker_poll_interval_seconds,
            stalled_after_seconds=self.settings.worker_stalled_after_seconds,
        )
        self._workers[queue_name] = worker
        logger.info(
            f"Registered worker for {queue_name} (concurrency {concurrency}"
            + (f", limit {limiter.max}/{limiter.duration_ms}ms)" if limiter else ")")
        )
        return worker

    def get_worker(self, queue_name: str) -> Optional[QueueWorker]:
        return self._workers.get(queue_name)

    @property
    def worker_names(self) -> list[str]:
        return list(self._workers)

    def start(self) -> None:
        """Start every registered worker in the background."""
        for worker in self._workers.values():
            worker.start()

    async def shutdown(self) -> None:
        """Stop workers, then close the Redis connection."""
        for name, worker in list(self._workers.items()):
            await worker.close()
            logger.info(f"Worker {name} closed")
        self._workers.clear()
        self._queues.clear()

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis")

    # ==================== Inspection ====================

    async def get_stats(self) -> dict[str, dict[str, int]]:
        """Job counts for every known queue."""
        return {name: await self.get_queue(name).get_counts() for name in ALL_QUEUES}

    async def get_failed_jobs(self, queue_name: str, limit: int = 100) -> list[Job]:
        return await self.get_queue(queue_name).get_failed_jobs(limit)
