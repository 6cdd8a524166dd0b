"""External capabilities and domain services used by the workers."""

from .email_service import EmailService
from .keyword_enrichment import KeywordEnricher, SeRankingClient
from .quota_reset_monitor import QuotaResetMonitor
from .quota_service import QuotaService
from .rank_tracker import RankResult, RankTracker
from .step_ledger import StepLedger, StepLedgerFactory

__all__ = [
    "EmailService",
    "KeywordEnricher",
    "SeRankingClient",
    "QuotaResetMonitor",
    "QuotaService",
    "RankResult",
    "RankTracker",
    "StepLedger",
    "StepLedgerFactory",
]
