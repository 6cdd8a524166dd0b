"""Queue module for background job processing.

Features:
- Durable named queues on Redis sorted sets
- Retry with exponential backoff, fail-fast for permanent errors
- Failed-job store with manual retry
- Repeatable (cron) jobs registered idempotently
- Per-queue concurrency and fixed-window rate limits
"""

from .config import (
    ALL_QUEUES,
    QUEUE_AUTO_CANCEL,
    QUEUE_EMAIL,
    QUEUE_KEYWORD_ENRICHMENT,
    QUEUE_PAYMENTS,
    QUEUE_QUOTA_RESET,
    QUEUE_RANK_CHECK,
    QUEUE_RANK_SCHEDULE,
    QueueSettings,
    RateLimit,
    get_queue_settings,
)
from .job_queue import (
    Backoff,
    DEFAULT_JOB_OPTIONS,
    Job,
    JobOptions,
    JobQueue,
    JobStatus,
    RepeatableJob,
    RepeatOptions,
    RetentionPolicy,
)
from .rate_limiter import RateLimiter
from .registry import QueueRegistry
from .worker import QueueWorker

__all__ = [
    'ALL_QUEUES',
    'QUEUE_AUTO_CANCEL',
    'QUEUE_EMAIL',
    'QUEUE_KEYWORD_ENRICHMENT',
    'QUEUE_PAYMENTS',
    'QUEUE_QUOTA_RESET',
    'QUEUE_RANK_CHECK',
    'QUEUE_RANK_SCHEDULE',
    'QueueSettings',
    'RateLimit',
    'get_queue_settings',
    'Backoff',
    'DEFAULT_JOB_OPTIONS',
    'Job',
    'JobOptions',
    'JobQueue',
    'JobStatus',
    'RepeatableJob',
    'RepeatOptions',
    'RetentionPolicy',
    'RateLimiter',
    'QueueRegistry',
    'QueueWorker',
]
