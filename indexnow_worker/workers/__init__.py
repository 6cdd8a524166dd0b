"""Job processors and the bootstrap that wires them to their queues."""

import logging
from typing import Any

from indexnow_worker.config import Settings
from indexnow_worker.db.repositories import (
    KeywordBankRepository,
    RankKeywordRepository,
    ServiceAccountRepository,
    TransactionRepository,
    UserProfileRepository,
)
from indexnow_worker.db.secure import SecureOperationWrapper
from indexnow_worker.db.supabase import SupabaseClient
from indexnow_worker.queue.registry import QueueRegistry
from indexnow_worker.queue.scheduler import get_scheduled_jobs, schedule_all
from indexnow_worker.services.email_service import EmailService
from indexnow_worker.services.keyword_enrichment import KeywordEnricher, SeRankingClient
from indexnow_worker.services.quota_reset_monitor import QuotaResetMonitor
from indexnow_worker.services.quota_service import QuotaService
from indexnow_worker.services.rank_tracker import RankTracker
from indexnow_worker.services.step_ledger import StepLedgerFactory
from .auto_cancel import initialize_auto_cancel_worker, process_auto_cancel
from .base import WorkerContext, sweep_lock
from .email import initialize_email_worker, process_email
from .keyword_enrichment import initialize_keyword_enrichment_worker, process_keyword_enrichment
from .payments import initialize_payment_worker, process_payment_webhook
from .quota_reset import initialize_quota_reset_worker, process_quota_reset
from .rank_check import initialize_rank_check_worker, process_rank_check
from .rank_schedule import initialize_rank_schedule_worker, process_daily_rank_check

logger = logging.getLogger(__name__)

WORKER_INITIALIZERS = [
    initialize_rank_check_worker,
    initialize_email_worker,
    initialize_payment_worker,
    initialize_auto_cancel_worker,
    initialize_keyword_enrichment_worker,
    initialize_quota_reset_worker,
    initialize_rank_schedule_worker,
]


def build_worker_context(settings: Settings, registry: QueueRegistry) -> WorkerContext:
    """Construct every collaborator the processors need."""
    timeout = settings.external_call_timeout_seconds
    db = SupabaseClient(settings.supabase_url, settings.supabase_service_role_key, timeout=timeout)
    secure = SecureOperationWrapper(db)

    profiles = UserProfileRepository(db, secure)
    quota_service = QuotaService(profiles)
    rank_tracker = RankTracker(settings.firecrawl_api_key, settings.firecrawl_base_url, timeout=timeout)
    seranking = SeRankingClient(settings.seranking_base_url, timeout=timeout)

    return WorkerContext(
        settings=settings,
        registry=registry,
        db=db,
        rank_keywords=RankKeywordRepository(db, secure),
        transactions=TransactionRepository(db, secure),
        rank_tracker=rank_tracker,
        email_service=EmailService(settings),
        quota_service=quota_service,
        quota_monitor=QuotaResetMonitor(quota_service, ServiceAccountRepository(db, secure)),
        enricher=KeywordEnricher(
            KeywordBankRepository(db, secure),
            seranking,
            batch_size=settings.keyword_enrichment_batch_size,
            timeout_seconds=timeout,
        ),
        ledger_for=StepLedgerFactory(lambda: registry.client, settings.queue_prefix),
        closers=[rank_tracker.aclose, seranking.aclose, db.aclose],
    )


async def initialize_all_workers(
    registry: QueueRegistry,
    context: WorkerContext,
    settings: Settings,
    dedicated: bool = False,
) -> list[str]:
    """
    Register every worker and repeatable job, subject to the feature flag.

    Args:
        dedicated: True when called from the standalone worker process, which
            consumes regardless of WORKER_MODE

    Returns:
        Names of the queues that now have a worker
    """
    if not settings.enable_job_queue:
        logger.info("Job queue disabled (ENABLE_JOB_QUEUE=false), no workers started")
        return []
    if settings.worker_mode == "none" and not dedicated:
        logger.info("WORKER_MODE=none: this process only enqueues jobs")
        return []
    if not registry.is_connected:
        logger.warning("Redis unavailable, background workers not started")
        return []

    for initialize in WORKER_INITIALIZERS:
        initialize(registry, context)

    scheduled = await schedule_all(registry, settings.scheduler_timezone)
    logger.info(
        f"Initialized {len(registry.worker_names)} worker(s); "
        f"{len(scheduled)} repeatable job(s) newly scheduled"
    )
    return registry.worker_names


async def get_background_services_status(registry: QueueRegistry) -> dict[str, Any]:
    """Feature flag, mode, registered workers and repeatable schedules."""
    settings = registry.settings
    status: dict[str, Any] = {
        "enabled": settings.enable_job_queue,
        "mode": settings.worker_mode,
        "connected": registry.is_connected,
        "workers": registry.worker_names,
        "schedules": [],
    }
    if settings.enable_job_queue and registry.is_connected:
        status["schedules"] = await get_scheduled_jobs(registry)
    return status


__all__ = [
    "WorkerContext",
    "sweep_lock",
    "build_worker_context",
    "initialize_all_workers",
    "get_background_services_status",
    "process_rank_check",
    "process_email",
    "process_payment_webhook",
    "process_auto_cancel",
    "process_keyword_enrichment",
    "process_quota_reset",
    "process_daily_rank_check",
]
