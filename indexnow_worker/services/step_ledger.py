"""Per-job record of completed steps.

Multi-step jobs write to several tables without a transaction. Each step
stores its output here once it has been applied, so a retried job reuses
earlier outputs and skips steps that already ran.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis

logger = logging.getLogger(__name__)

T = TypeVar("T")

LEDGER_TTL_SECONDS = 7 * 24 * 3600  # Matches failed-job retention


class StepLedger:
    def __init__(self, client: redis.Redis, job_id: str, prefix: str = "indexnow", ttl: int = LEDGER_TTL_SECONDS):
        self._redis = client
        self.job_id = job_id
        self.key = f"{prefix}:ledger:{job_id}"
        self.ttl = ttl

    async def get(self, step: str) -> Optional[dict[str, Any]]:
        """``{"value": ...}`` if the step was recorded, else None."""
        raw = await self._redis.hget(self.key, step)
        return json.loads(raw) if raw else None

    async def record(self, step: str, value: Any = None) -> None:
        await self._redis.hset(self.key, step, json.dumps({"value": value}, default=str))
        await self._redis.expire(self.key, self.ttl)

    async def run(self, step: str, action: Callable[[], Awaitable[T]]) -> T:
        """Run ``action`` once per job; later attempts get the recorded value."""
        recorded = await self.get(step)
        if recorded is not None:
            logger.info(f"Job {self.job_id}: step {step} already applied, skipping")
            return recorded["value"]
        value = await action()
        await self.record(step, value)
        return value


class StepLedgerFactory:
    """Builds ledgers for job ids.

    ``connection`` is called per ledger; the Redis connection need not exist
    when the factory is built.
    """

    def __init__(self, connection: Callable[[], redis.Redis], prefix: str = "indexnow"):
        self._connection = connection
        self.prefix = prefix

    def __call__(self, job_id: str) -> StepLedger:
        return StepLedger(self._connection(), job_id, self.prefix)
