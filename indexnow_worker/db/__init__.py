"""Relational store access (Supabase PostgREST)."""

from .supabase import Filter, SupabaseClient, build_filter_params
from .secure import (
    QueryOptions,
    SecureOperationWrapper,
    SecurityContext,
    system_context,
)
from .repositories import (
    KeywordBankRepository,
    RankKeywordRepository,
    ServiceAccountRepository,
    TransactionRepository,
    UserProfileRepository,
)

__all__ = [
    "Filter",
    "SupabaseClient",
    "build_filter_params",
    "QueryOptions",
    "SecureOperationWrapper",
    "SecurityContext",
    "system_context",
    "KeywordBankRepository",
    "RankKeywordRepository",
    "ServiceAccountRepository",
    "TransactionRepository",
    "UserProfileRepository",
]
