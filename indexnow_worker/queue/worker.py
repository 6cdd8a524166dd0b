"""Queue consumers and the dedicated worker process entry point.

A QueueWorker runs ``concurrency`` consumer tasks against one queue plus
a housekeeping task that promotes due repeatable jobs and recovers
stalled ones. ``run_worker`` boots every worker in a standalone process
(WORKER_MODE=all).
"""

import asyncio
import signal
import time
import logging
from typing import Any, Awaitable, Callable, Optional

from indexnow_worker.lib.json_logger import job_logger
from .job_queue import Job, JobQueue
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

Processor = Callable[[Job], Awaitable[Any]]


class QueueWorker:
    """Consume one queue with bounded concurrency and an optional rate limit."""

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        concurrency: int = 1,
        limiter: Optional[RateLimiter] = None,
        poll_interval: float = 1.0,
        stalled_after_seconds: float = 300,
        housekeeping_interval: float = 5.0,
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = max(concurrency, 1)
        self.limiter = limiter
        self.poll_interval = poll_interval
        self.stalled_after_seconds = stalled_after_seconds
        self.housekeeping_interval = housekeeping_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return self.queue.name

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> asyncio.Task:
        """Run the worker in a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"worker:{self.name}")
        return self._task

    async def run(self) -> None:
        """Process jobs until stopped."""
        self._running = True
        logger.info(f"Starting worker for {self.name} (concurrency {self.concurrency})")
        tasks = [asyncio.create_task(self._consume(slot)) for slot in range(self.concurrency)]
        tasks.append(asyncio.create_task(self._housekeeping()))
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info(f"Worker for {self.name} cancelled")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._running = False
            logger.info(f"Worker for {self.name} stopped")

    def stop(self) -> None:
        """Let consumers finish their current job and exit."""
        self._running = False

    async def close(self) -> None:
        """Stop and wait for the background task."""
        self.stop()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _consume(self, slot: int) -> None:
        while self._running:
            try:
                job = await self.queue.dequeue()
                if not job:
                    await asyncio.sleep(self.poll_interval)
                    continue

                await self.process_job(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Consumer {self.name}#{slot} error: {e}")
                await asyncio.sleep(self.poll_interval)

    async def _wait_for_rate_limit(self) -> None:
        if self.limiter is None:
            return
        while True:
            wait = await self.limiter.acquire()
            if wait <= 0:
                return
            await asyncio.sleep(wait)

    async def _heartbeat(self, job: Job) -> None:
        interval = self.stalled_after_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.heartbeat(job):
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Heartbeat for job {job.id} on {self.name} failed: {e}")

    async def _run_claimed(self, job: Job) -> Any:
        beat = asyncio.create_task(self._heartbeat(job), name=f"heartbeat:{self.name}:{job.id}")
        try:
            await self._wait_for_rate_limit()
            return await self.processor(job)
        finally:
            beat.cancel()
            await asyncio.gather(beat, return_exceptions=True)

    async def process_job(self, job: Job) -> Optional[Any]:
        """Run the processor for one claimed job and record the outcome.

        The job's active timestamp is refreshed while the rate limiter and
        the processor run, so long jobs are not recovered as stalled.
        """
        log = job_logger(job.id, job.name, self.name, job.attempts_made)
        started = time.monotonic()
        try:
            result = await self._run_claimed(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            will_retry = await self.queue.fail(job, e)
            log.error(
                f"Job {job.id} failed: {e}",
                extra={
                    "status": "retrying" if will_retry else "failed",
                    "error_code": e.__class__.__name__,
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            return None

        await self.queue.complete(job, result)
        log.info(
            f"Job {job.id} completed",
            extra={"status": "completed", "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return result

    async def _housekeeping(self) -> None:
        while self._running:
            try:
                await self.run_housekeeping()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Housekeeping for {self.name} failed: {e}")
            await asyncio.sleep(self.housekeeping_interval)

    async def run_housekeeping(self) -> None:
        promoted = await self.queue.promote_repeatables()
        if promoted:
            logger.info(f"Promoted {promoted} repeatable job(s) on {self.name}")
        await self.queue.recover_stalled(self.stalled_after_seconds)


async def run_worker() -> None:
    """Run every worker in a dedicated process until SIGTERM/SIGINT."""
    from indexnow_worker.config import get_settings
    from indexnow_worker.queue.registry import QueueRegistry
    from indexnow_worker.workers import build_worker_context, initialize_all_workers

    settings = get_settings()
    registry = QueueRegistry(settings)
    await registry.connect()
    context = build_worker_context(settings, registry)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def shutdown():
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await initialize_all_workers(registry, context, settings, dedicated=True)
        registry.start()
        await stop_event.wait()
    finally:
        await registry.shutdown()
        await context.aclose()
        logger.info("Worker stopped")


if __name__ == "__main__":
    from indexnow_worker.config import get_settings
    from indexnow_worker.lib.json_logger import setup_logging

    _settings = get_settings()
    setup_logging(_settings.log_level, _settings.log_format)
    asyncio.run(run_worker())
