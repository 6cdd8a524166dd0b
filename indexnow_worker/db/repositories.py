"""Table-level data access used by the workers.

Each repository wraps one concern of the relational store. Privileged
operations started by scheduled sweeps go through the secure wrapper so
they are audit-logged; per-user writes made while processing a single
job talk to the client directly.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from .secure import QueryOptions, SecureOperationWrapper, system_context
from .supabase import SupabaseClient

logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RankKeywordRepository:
    """indb_rank_keywords, indb_keyword_rank_history and indb_keyword_domains."""

    KEYWORDS = "indb_rank_keywords"
    HISTORY = "indb_keyword_rank_history"
    DOMAINS = "indb_keyword_domains"

    def __init__(self, db: SupabaseClient, secure: SecureOperationWrapper):
        self.db = db
        self.secure = secure

    async def get_keyword(self, keyword_id: str, user_id: str) -> Optional[dict]:
        return await self.db.select_one(
            self.KEYWORDS,
            "id, user_id, keyword, domain, country, device, position, previous_position, last_checked",
            [("id", "eq", keyword_id), ("user_id", "eq", user_id)],
        )

    async def update_position(
        self,
        keyword_id: str,
        position: Optional[int],
        previous_position: Optional[int],
        checked_at: str,
    ) -> list[dict]:
        return await self.db.update(
            self.KEYWORDS,
            {
                "position": position,
                "previous_position": previous_position,
                "last_checked": checked_at,
                "updated_at": checked_at,
            },
            [("id", "eq", keyword_id)],
        )

    async def insert_history(self, row: dict[str, Any]) -> list[dict]:
        return await self.db.insert(self.HISTORY, row)

    async def get_domain_id(self, user_id: str, domain: str) -> Optional[str]:
        row = await self.db.select_one(
            self.DOMAINS, "id", [("user_id", "eq", user_id), ("domain", "eq", domain)]
        )
        return (row or {}).get("id")

    async def find_due_for_check(self, checked_before: str, limit: int) -> list[dict]:
        """Active keywords never checked or last checked before ``checked_before``."""
        query = QueryOptions(table=self.KEYWORDS, operation_type="select")
        context = system_context(
            "select_rank_keywords_due_for_check",
            "workers.rank_schedule",
            "Daily rank check sweep selects keywords not checked today",
            checked_before=checked_before,
        )

        async def _select():
            rows = await self.db.select(
                self.KEYWORDS,
                "id, user_id, keyword, domain, country, device, last_checked",
                [("is_active", "eq", True)],
                order="last_checked.asc.nullsfirst",
                limit=limit,
            )
            return [
                row for row in rows
                if not row.get("last_checked") or row["last_checked"] < checked_before
            ]

        return await self.secure.execute(context, query, _select)


class TransactionRepository:
    """indb_payment_transactions."""

    TABLE = "indb_payment_transactions"
    COLUMNS = (
        "id, user_id, order_id, transaction_status, user_email, customer_name, "
        "package_name, billing_period, gross_amount, created_at"
    )

    def __init__(self, db: SupabaseClient, secure: SecureOperationWrapper):
        self.db = db
        self.secure = secure

    async def find_expired_pending(self, created_before: str, limit: int) -> list[dict]:
        query = QueryOptions(
            table=self.TABLE,
            operation_type="select",
            columns=self.COLUMNS,
            filters=[("transaction_status", "eq", "pending"), ("created_at", "lt", created_before)],
        )
        context = system_context(
            "select_expired_pending_transactions",
            "workers.auto_cancel",
            "Auto-cancel sweep selects pending orders past their payment window",
            created_before=created_before,
            limit=limit,
        )
        return await self.secure.execute(
            context,
            query,
            lambda: self.db.select(
                self.TABLE, self.COLUMNS, query.filters, order="created_at.asc", limit=limit
            ),
        )

    async def cancel_if_pending(self, transaction_id: str, reason: str) -> bool:
        """Cancel a transaction unless it left ``pending`` meanwhile."""
        now = utcnow_iso()
        values = {
            "transaction_status": "cancelled",
            "processed_at": now,
            "updated_at": now,
            "notes": reason,
        }
        query = QueryOptions(
            table=self.TABLE,
            operation_type="update",
            filters=[("id", "eq", transaction_id), ("transaction_status", "eq", "pending")],
            data=values,
        )
        context = system_context(
            "auto_cancel_expired_transaction",
            "workers.auto_cancel",
            reason,
            transaction_id=transaction_id,
        )
        updated = await self.secure.execute(
            context, query, lambda: self.db.update(self.TABLE, values, query.filters)
        )
        return bool(updated)

    async def get_by_order_id(self, order_id: str) -> Optional[dict]:
        return await self.db.select_one(self.TABLE, self.COLUMNS, [("order_id", "eq", order_id)])

    async def apply_gateway_status(self, transaction_id: str, values: dict[str, Any]) -> bool:
        """Apply a webhook outcome; only a still-pending row is changed."""
        query = QueryOptions(
            table=self.TABLE,
            operation_type="update",
            filters=[("id", "eq", transaction_id), ("transaction_status", "eq", "pending")],
            data=values,
        )
        context = system_context(
            "apply_payment_webhook_status",
            "workers.payments",
            f"Payment gateway reported {values.get('transaction_status')}",
            transaction_id=transaction_id,
        )
        updated = await self.secure.execute(
            context, query, lambda: self.db.update(self.TABLE, values, query.filters)
        )
        return bool(updated)


class UserProfileRepository:
    """Quota columns of indb_auth_user_profiles."""

    TABLE = "indb_auth_user_profiles"

    def __init__(self, db: SupabaseClient, secure: SecureOperationWrapper):
        self.db = db
        self.secure = secure

    async def get_quota(self, user_id: str) -> Optional[dict]:
        return await self.db.select_one(
            self.TABLE,
            "user_id, daily_quota_used, daily_quota_limit, quota_reset_date",
            [("user_id", "eq", user_id)],
        )

    async def consume_quota(self, user_id: str, amount: int) -> Any:
        return await self.db.rpc(
            "consume_user_quota", {"target_user_id": user_id, "quota_amount": amount}
        )

    async def reset_stale_quotas(self, today: date) -> int:
        """Zero ``daily_quota_used`` for every profile whose reset date is before today."""
        values = {"daily_quota_used": 0, "quota_reset_date": today.isoformat()}
        query = QueryOptions(
            table=self.TABLE,
            operation_type="update",
            filters=[("quota_reset_date", "lt", today.isoformat())],
            data=values,
        )
        context = system_context(
            "reset_daily_quotas", "workers.quota_reset", "Daily quota window rolled over"
        )
        updated = await self.secure.execute(
            context, query, lambda: self.db.update(self.TABLE, values, query.filters)
        )
        return len(updated)

    async def list_quotas(self) -> list[dict]:
        return await self.db.select(self.TABLE, "user_id, daily_quota_used, daily_quota_limit")


class ServiceAccountRepository:
    """Google service accounts, their daily usage, paused indexing jobs and notifications."""

    ACCOUNTS = "indb_google_service_accounts"
    USAGE = "indb_google_quota_usage"
    JOBS = "indb_indexing_jobs"
    NOTIFICATIONS = "indb_notifications_dashboard"

    def __init__(self, db: SupabaseClient, secure: SecureOperationWrapper):
        self.db = db
        self.secure = secure

    async def list_inactive(self) -> list[dict]:
        query = QueryOptions(
            table=self.ACCOUNTS, operation_type="select", filters=[("is_active", "eq", False)]
        )
        context = system_context(
            "select_inactive_service_accounts",
            "services.quota_reset_monitor",
            "Quota monitor looks for accounts to reactivate",
        )
        return await self.secure.execute(
            context, query, lambda: self.db.select(self.ACCOUNTS, "id, name, email, user_id", query.filters)
        )

    async def requests_made_on(self, account_id: str, day: date) -> int:
        row = await self.db.select_one(
            self.USAGE,
            "requests_made",
            [("service_account_id", "eq", account_id), ("date", "eq", day.isoformat())],
        )
        return int((row or {}).get("requests_made") or 0)

    async def reactivate(self, account_id: str) -> None:
        values = {"is_active": True, "updated_at": utcnow_iso()}
        query = QueryOptions(
            table=self.ACCOUNTS, operation_type="update", filters=[("id", "eq", account_id)], data=values
        )
        context = system_context(
            "reactivate_service_account",
            "services.quota_reset_monitor",
            "Daily quota reset detected",
            service_account_id=account_id,
        )
        await self.secure.execute(context, query, lambda: self.db.update(self.ACCOUNTS, values, query.filters))

    async def has_active_account(self, user_id: str) -> bool:
        rows = await self.db.select(
            self.ACCOUNTS, "id", [("user_id", "eq", user_id), ("is_active", "eq", True)], limit=1
        )
        return bool(rows)

    async def list_quota_paused_jobs(self) -> list[dict]:
        query = QueryOptions(table=self.JOBS, operation_type="select", filters=[("status", "eq", "paused")])
        context = system_context(
            "select_quota_paused_jobs",
            "services.quota_reset_monitor",
            "Quota monitor looks for jobs paused by quota exhaustion",
        )
        rows = await self.secure.execute(
            context,
            query,
            lambda: self.db.select(self.JOBS, "id, user_id, name, error_message", query.filters),
        )
        return [row for row in rows if "quota exhausted" in (row.get("error_message") or "").lower()]

    async def resume_job(self, job_id: str) -> None:
        values = {"status": "pending", "error_message": None, "updated_at": utcnow_iso()}
        query = QueryOptions(table=self.JOBS, operation_type="update", filters=[("id", "eq", job_id)], data=values)
        context = system_context(
            "resume_quota_paused_job",
            "services.quota_reset_monitor",
            "Service accounts reactivated after quota reset",
            indexing_job_id=job_id,
        )
        await self.secure.execute(context, query, lambda: self.db.update(self.JOBS, values, query.filters))

    async def delete_quota_notifications(self, older_than: datetime) -> int:
        filters = [
            ("type", "eq", "service_account_quota_exhausted"),
            ("created_at", "lt", older_than.isoformat()),
        ]
        query = QueryOptions(table=self.NOTIFICATIONS, operation_type="delete", filters=filters)
        context = system_context(
            "delete_stale_quota_notifications",
            "services.quota_reset_monitor",
            "Quota exhausted notifications are stale after the reset",
        )
        deleted = await self.secure.execute(context, query, lambda: self.db.delete(self.NOTIFICATIONS, filters))
        return len(deleted)


class KeywordBankRepository:
    """indb_keyword_keywords, indb_keyword_bank, indb_keyword_countries, indb_site_integration."""

    KEYWORDS = "indb_keyword_keywords"
    BANK = "indb_keyword_bank"
    COUNTRIES = "indb_keyword_countries"
    INTEGRATIONS = "indb_site_integration"

    def __init__(self, db: SupabaseClient, secure: SecureOperationWrapper):
        self.db = db
        self.secure = secure

    async def get_api_key(self, service_name: str = "seranking_keyword_export") -> str:
        query = QueryOptions(
            table=self.INTEGRATIONS,
            operation_type="select",
            columns="apikey",
            filters=[("service_name", "eq", service_name), ("is_active", "eq", True)],
        )
        context = system_context(
            "get_seranking_api_key_for_keyword_enrichment",
            "services.keyword_enrichment",
            "Keyword enrichment needs the keyword data API key",
        )
        row = await self.secure.execute(
            context, query, lambda: self.db.select_one(self.INTEGRATIONS, "apikey", query.filters)
        )
        return (row or {}).get("apikey") or ""

    async def find_unenriched(self, limit: int) -> list[dict]:
        query = QueryOptions(
            table=self.KEYWORDS,
            operation_type="select",
            filters=[("is_active", "eq", True), ("keyword_bank_id", "is", None)],
        )
        context = system_context(
            "select_keywords_needing_enrichment",
            "services.keyword_enrichment",
            "Hourly enrichment pass",
            limit=limit,
        )
        return await self.secure.execute(
            context,
            query,
            lambda: self.db.select(
                self.KEYWORDS,
                "id, user_id, keyword, country_id, keyword_bank_id, intelligence_updated_at",
                query.filters,
                limit=limit,
            ),
        )

    async def get_country(self, country_id: str) -> Optional[dict]:
        return await self.db.select_one(self.COUNTRIES, "id, iso2_code, name", [("id", "eq", country_id)])

    async def get_cached(self, keyword: str, country_id: str, fresh_after: datetime) -> Optional[dict]:
        return await self.db.select_one(
            self.BANK,
            "*",
            [
                ("keyword", "eq", keyword.lower()),
                ("country_id", "eq", country_id),
                ("data_updated_at", "gte", fresh_after.isoformat()),
            ],
        )

    async def upsert_bank_entry(self, row: dict[str, Any]) -> dict:
        rows = await self.db.upsert(self.BANK, row, on_conflict="keyword,country_id")
        return rows[0] if rows else row

    async def link_keyword(self, keyword_id: str, bank: dict[str, Any]) -> None:
        now = utcnow_iso()
        values = {
            "keyword_bank_id": bank.get("id"),
            "search_volume": bank.get("volume"),
            "cpc": bank.get("cpc"),
            "competition": bank.get("competition"),
            "difficulty": bank.get("difficulty"),
            "keyword_intent": bank.get("keyword_intent"),
            "history_trend": bank.get("history_trend"),
            "intelligence_updated_at": now,
            "updated_at": now,
        }
        query = QueryOptions(
            table=self.KEYWORDS, operation_type="update", filters=[("id", "eq", keyword_id)], data=values
        )
        context = system_context(
            "update_keyword_enrichment_data",
            "services.keyword_enrichment",
            "Attach keyword bank data",
            keyword_id=keyword_id,
        )
        await self.secure.execute(context, query, lambda: self.db.update(self.KEYWORDS, values, query.filters))


def start_of_day_utc(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def hours_ago(hours: int, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
