"""Shared fixtures: in-memory stand-ins for Redis and the PostgREST client."""

import itertools
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from indexnow_worker.config import Settings
from indexnow_worker.db.repositories import (
    KeywordBankRepository,
    RankKeywordRepository,
    ServiceAccountRepository,
    TransactionRepository,
    UserProfileRepository,
)
from indexnow_worker.db.secure import SecureOperationWrapper
from indexnow_worker.queue.registry import QueueRegistry
from indexnow_worker.services.email_service import EmailService
from indexnow_worker.services.keyword_enrichment import KeywordEnricher
from indexnow_worker.services.quota_reset_monitor import QuotaResetMonitor
from indexnow_worker.services.quota_service import QuotaService
from indexnow_worker.services.step_ledger import StepLedgerFactory
from indexnow_worker.workers.base import WorkerContext


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _parse_bound(bound: Any) -> tuple[float, bool]:
    """(value, exclusive) for a Redis score bound."""
    if isinstance(bound, str):
        if bound == "-inf":
            return float("-inf"), False
        if bound == "+inf":
            return float("inf"), False
        if bound.startswith("("):
            return float(bound[1:]), True
        return float(bound), False
    return float(bound), False


class FakeRedis:
    """The subset of redis.asyncio.Redis the queue uses, decode_responses=True."""

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True

    # strings

    async def set(self, key: str, value: Any, nx: bool = False, ex: Optional[int] = None):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.strings.get(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for store in (self.strings, self.zsets, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for k in keys if k in self.strings or k in self.zsets or k in self.hashes)

    async def incr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    # sorted sets

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        return sorted(self.zsets.get(key, {}).items(), key=lambda item: (item[1], item[0]))

    async def zadd(self, key: str, mapping: dict[str, float], xx: bool = False) -> int:
        zset = self.zsets.setdefault(key, {})
        if xx:
            mapping = {member: score for member, score in mapping.items() if member in zset}
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    def _in_range(self, score: float, low: Any, high: Any) -> bool:
        low_value, low_exclusive = _parse_bound(low)
        high_value, high_exclusive = _parse_bound(high)
        above = score > low_value if low_exclusive else score >= low_value
        below = score < high_value if high_exclusive else score <= high_value
        return above and below

    async def zrangebyscore(self, key: str, low: Any, high: Any, start: Optional[int] = None, num: Optional[int] = None):
        members = [m for m, s in self._sorted(key) if self._in_range(s, low, high)]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        members = [m for m, _ in self._sorted(key)]
        end = len(members) if end == -1 else end + 1
        return members[start:end]

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    async def zcount(self, key: str, low: Any, high: Any) -> int:
        return sum(1 for _, s in self._sorted(key) if self._in_range(s, low, high))

    async def zscore(self, key: str, member: str) -> Optional[float]:
        return self.zsets.get(key, {}).get(member)

    # hashes

    async def hset(self, key: str, field: Optional[str] = None, value: Any = None, mapping: Optional[dict] = None) -> int:
        h = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = sum(1 for f in items if f not in h)
        h.update({f: str(v) for f, v in items.items()})
        return added

    async def hsetnx(self, key: str, field: str, value: Any) -> bool:
        h = self.hashes.setdefault(key, {})
        if field in h:
            return False
        h[field] = str(value)
        return True

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self.hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hdel(self, key: str, *fields: str) -> int:
        h = self.hashes.get(key, {})
        return sum(1 for f in fields if h.pop(f, None) is not None)

    async def hlen(self, key: str) -> int:
        return len(self.hashes.get(key, {}))


def _matches(row: dict, filters) -> bool:
    for column, op, value in filters:
        actual = row.get(column)
        if op == "eq" and actual != value:
            return False
        if op == "neq" and actual == value:
            return False
        if op == "is" and actual is not value:
            return False
        if op == "in" and actual not in value:
            return False
        if op in ("lt", "lte", "gt", "gte"):
            if actual is None:
                return False
            if op == "lt" and not actual < value:
                return False
            if op == "lte" and not actual <= value:
                return False
            if op == "gt" and not actual > value:
                return False
            if op == "gte" and not actual >= value:
                return False
    return True


class FakeSupabase:
    """
    In-memory tables with the SupabaseClient method surface.

    ``calls`` records every method invocation as (method, table); ``fail_on``
    maps (method, table) to an exception to raise.
    """

    def __init__(self, tables: Optional[dict[str, list[dict]]] = None):
        self.tables: dict[str, list[dict]] = {name: list(rows) for name, rows in (tables or {}).items()}
        self.rpc_handlers: dict[str, Any] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[tuple[str, str], Exception] = {}
        self.base_url = "http://supabase.test"
        self.healthy = True
        self._ids = itertools.count(1)

    def rows(self, table: str) -> list[dict]:
        return self.tables.setdefault(table, [])

    def _record(self, method: str, table: str) -> None:
        self.calls.append((method, table))
        error = self.fail_on.get((method, table))
        if error is not None:
            raise error

    def data_calls(self) -> list[tuple[str, str]]:
        """Calls other than audit-log writes."""
        return [c for c in self.calls if c[1] != "indb_security_audit_logs"]

    async def select(self, table, columns="*", filters=(), order=None, limit=None):
        self._record("select", table)
        rows = [dict(r) for r in self.rows(table) if _matches(r, filters)]
        if order:
            column, direction, *rest = order.split(".")
            nulls_first = "nullsfirst" in rest
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=direction == "desc")
            rows = missing + present if nulls_first else present + missing
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def select_one(self, table, columns="*", filters=()):
        rows = await self.select(table, columns, filters, limit=1)
        return rows[0] if rows else None

    async def insert(self, table, rows):
        self._record("insert", table)
        inserted = []
        for row in rows if isinstance(rows, list) else [rows]:
            row = {"id": f"{table}-{next(self._ids)}", **row}
            self.rows(table).append(row)
            inserted.append(dict(row))
        return inserted

    async def upsert(self, table, rows, on_conflict):
        self._record("upsert", table)
        keys = on_conflict.split(",")
        result = []
        for row in rows if isinstance(rows, list) else [rows]:
            existing = next(
                (r for r in self.rows(table) if all(r.get(k) == row.get(k) for k in keys)), None
            )
            if existing is not None:
                existing.update(row)
                result.append(dict(existing))
            else:
                new_row = {"id": f"{table}-{next(self._ids)}", **row}
                self.rows(table).append(new_row)
                result.append(dict(new_row))
        return result

    async def update(self, table, values, filters):
        self._record("update", table)
        updated = []
        for row in self.rows(table):
            if _matches(row, filters):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def delete(self, table, filters):
        self._record("delete", table)
        kept, deleted = [], []
        for row in self.rows(table):
            (deleted if _matches(row, filters) else kept).append(row)
        self.tables[table] = kept
        return deleted

    async def rpc(self, function, params=None):
        self._record("rpc", function)
        handler = self.rpc_handlers.get(function)
        if handler is None:
            return None
        return handler(**(params or {}))

    async def ping(self) -> bool:
        return self.healthy

    async def aclose(self) -> None:
        pass


def consume_quota_rpc(db: FakeSupabase):
    """Mimics the consume_user_quota function on indb_auth_user_profiles."""

    def consume_user_quota(target_user_id: str, quota_amount: int) -> bool:
        for row in db.rows("indb_auth_user_profiles"):
            if row["user_id"] == target_user_id:
                limit = row.get("daily_quota_limit")
                used = row.get("daily_quota_used") or 0
                if limit != -1 and used + quota_amount > limit:
                    return False
                row["daily_quota_used"] = used + quota_amount
                return True
        return False

    return consume_user_quota


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fake_db() -> FakeSupabase:
    db = FakeSupabase()
    db.rpc_handlers["consume_user_quota"] = consume_quota_rpc(db)
    return db


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        enable_job_queue=True,
        worker_mode="inline",
        email_provider="mock",
        service_token="test-token",
        public_base_url="https://app.indexnow.test",
    )


@pytest.fixture
def registry(settings, fake_redis) -> QueueRegistry:
    return QueueRegistry(settings, client=fake_redis)


@pytest.fixture
def rank_tracker() -> AsyncMock:
    tracker = AsyncMock()
    tracker.aclose = AsyncMock()
    return tracker


@pytest.fixture
def enricher() -> AsyncMock:
    stub = AsyncMock(spec=KeywordEnricher)
    stub.process_enrichment_job.return_value = {"processed": 0, "successful": 0, "failed": 0, "total": 0}
    return stub


@pytest.fixture
def worker_context(settings, registry, fake_redis, fake_db, rank_tracker, enricher) -> WorkerContext:
    secure = SecureOperationWrapper(fake_db)
    quota_service = QuotaService(UserProfileRepository(fake_db, secure))
    return WorkerContext(
        settings=settings,
        registry=registry,
        db=fake_db,
        rank_keywords=RankKeywordRepository(fake_db, secure),
        transactions=TransactionRepository(fake_db, secure),
        rank_tracker=rank_tracker,
        email_service=EmailService(settings),
        quota_service=quota_service,
        quota_monitor=QuotaResetMonitor(quota_service, ServiceAccountRepository(fake_db, secure)),
        enricher=enricher,
        ledger_for=StepLedgerFactory(lambda: fake_redis, settings.queue_prefix),
    )


@pytest.fixture
def keyword_bank(fake_db) -> KeywordBankRepository:
    return KeywordBankRepository(fake_db, SecureOperationWrapper(fake_db))
