"""Queue names, default job options and per-queue worker settings."""

from dataclasses import dataclass
from typing import Optional

from indexnow_worker.config import Settings, get_settings

# Queue names
QUEUE_RANK_CHECK = "rank-check"
QUEUE_EMAIL = "email"
QUEUE_PAYMENTS = "payments"
QUEUE_AUTO_CANCEL = "auto-cancel"
QUEUE_KEYWORD_ENRICHMENT = "keyword-enrichment"
QUEUE_QUOTA_RESET = "quota-reset"
QUEUE_RANK_SCHEDULE = "rank-schedule"

ALL_QUEUES = [
    QUEUE_RANK_CHECK,
    QUEUE_EMAIL,
    QUEUE_PAYMENTS,
    QUEUE_AUTO_CANCEL,
    QUEUE_KEYWORD_ENRICHMENT,
    QUEUE_QUOTA_RESET,
    QUEUE_RANK_SCHEDULE,
]

# Default retention windows
COMPLETED_KEEP_SECONDS = 24 * 3600
COMPLETED_KEEP_COUNT = 1000
FAILED_KEEP_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class RateLimit:
    """At most ``max`` job starts per ``duration_ms`` window."""
    max: int
    duration_ms: int


@dataclass(frozen=True)
class QueueSettings:
    """Worker settings for one queue."""
    concurrency: int = 1
    limiter: Optional[RateLimit] = None


def get_queue_settings(settings: Optional[Settings] = None) -> dict[str, QueueSettings]:
    """Per-queue concurrency and rate limits, with environment overrides applied."""
    settings = settings or get_settings()
    return {
        QUEUE_RANK_CHECK: QueueSettings(
            concurrency=settings.concurrency_rank_check,
            limiter=RateLimit(
                max=settings.rate_limit_rank_check_max,
                duration_ms=settings.rate_limit_rank_check_duration_ms,
            ),
        ),
        QUEUE_EMAIL: QueueSettings(
            concurrency=settings.concurrency_email,
            limiter=RateLimit(
                max=settings.rate_limit_email_max,
                duration_ms=settings.rate_limit_email_duration_ms,
            ),
        ),
        QUEUE_PAYMENTS: QueueSettings(concurrency=settings.concurrency_payments),
        # Sweeps must not overlap within a process
        QUEUE_AUTO_CANCEL: QueueSettings(concurrency=1),
        QUEUE_KEYWORD_ENRICHMENT: QueueSettings(concurrency=1),
        QUEUE_QUOTA_RESET: QueueSettings(concurrency=1),
        QUEUE_RANK_SCHEDULE: QueueSettings(concurrency=1),
    }
