"""Shared plumbing for job processors: the dependency bundle and the sweep lock."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from indexnow_worker.config import Settings
from indexnow_worker.db.repositories import (
    RankKeywordRepository,
    TransactionRepository,
)
from indexnow_worker.db.supabase import SupabaseClient
from indexnow_worker.queue.registry import QueueRegistry
from indexnow_worker.services.email_service import EmailService
from indexnow_worker.services.keyword_enrichment import KeywordEnricher
from indexnow_worker.services.quota_reset_monitor import QuotaResetMonitor
from indexnow_worker.services.quota_service import QuotaService
from indexnow_worker.services.rank_tracker import RankTracker
from indexnow_worker.services.step_ledger import StepLedger

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Everything a processor may touch, built once per process and passed explicitly."""
    settings: Settings
    registry: QueueRegistry
    db: SupabaseClient
    rank_keywords: RankKeywordRepository
    transactions: TransactionRepository
    rank_tracker: RankTracker
    email_service: EmailService
    quota_service: QuotaService
    quota_monitor: QuotaResetMonitor
    enricher: KeywordEnricher
    ledger_for: Callable[[str], StepLedger]
    # Called on shutdown (HTTP clients)
    closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    @property
    def timeout(self) -> float:
        return self.settings.external_call_timeout_seconds

    async def aclose(self) -> None:
        for close in self.closers:
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing worker resource: {e}")


@asynccontextmanager
async def sweep_lock(ctx: WorkerContext, queue_name: str, lock_name: Optional[str] = None) -> AsyncIterator[bool]:
    """
    Hold the sweep lock for ``queue_name`` while the body runs.

    Yields False if another run still holds the lock; the body should then skip.
    """
    queue = ctx.registry.get_queue(queue_name)
    name = lock_name or f"sweep:{queue_name}"
    token = await queue.acquire_lock(name, ctx.settings.sweep_lock_ttl_seconds)
    if token is None:
        logger.info(f"Previous {queue_name} sweep still running, skipping this run")
    try:
        yield token is not None
    finally:
        if token is not None:
            await queue.release_lock(name, token)
