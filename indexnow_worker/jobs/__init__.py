"""Job payload schemas."""

from .schemas import (
    AutoCancelJob,
    DailyRankCheckJob,
    Device,
    EmailJob,
    EmailTemplate,
    JobPayload,
    KeywordEnrichmentJob,
    PaymentStatus,
    PaymentWebhookJob,
    QuotaResetJob,
    RankCheckJob,
    parse_job_payload,
    validate_payload,
)

__all__ = [
    "AutoCancelJob",
    "DailyRankCheckJob",
    "Device",
    "EmailJob",
    "EmailTemplate",
    "JobPayload",
    "KeywordEnrichmentJob",
    "PaymentStatus",
    "PaymentWebhookJob",
    "QuotaResetJob",
    "RankCheckJob",
    "parse_job_payload",
    "validate_payload",
]
