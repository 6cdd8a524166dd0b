"""Tests for quota accounting, the post-reset monitor and the quota-reset sweep."""

from datetime import datetime, timezone

import pytest

from indexnow_worker.db.repositories import ServiceAccountRepository, UserProfileRepository
from indexnow_worker.db.secure import SecureOperationWrapper
from indexnow_worker.errors import DatabaseError
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.services.quota_reset_monitor import QuotaResetMonitor
from indexnow_worker.services.quota_service import QuotaService
from indexnow_worker.workers.quota_reset import process_quota_reset

NOW = datetime(2024, 3, 2, 0, 15, tzinfo=timezone.utc)


@pytest.fixture
def quota_service(fake_db) -> QuotaService:
    return QuotaService(UserProfileRepository(fake_db, SecureOperationWrapper(fake_db)))


@pytest.fixture
def monitor(fake_db, quota_service) -> QuotaResetMonitor:
    accounts = ServiceAccountRepository(fake_db, SecureOperationWrapper(fake_db))
    return QuotaResetMonitor(quota_service, accounts, clock=lambda: NOW)


def profile(user_id, used, limit, reset_date="2024-03-02"):
    return {
        "user_id": user_id,
        "daily_quota_used": used,
        "daily_quota_limit": limit,
        "quota_reset_date": reset_date,
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("used,count", [(0, 1), (5000, 1), (10, 10_000)])
async def test_unlimited_quota_always_allows(fake_db, quota_service, used, count):
    fake_db.rows("indb_auth_user_profiles").append(profile("u1", used, -1))
    assert await quota_service.check_quota("u1", count) is True


@pytest.mark.asyncio
async def test_limited_quota_check(fake_db, quota_service):
    fake_db.rows("indb_auth_user_profiles").append(profile("u1", 9, 10))

    assert await quota_service.check_quota("u1") is True
    assert await quota_service.check_quota("u1", 2) is False
    assert await quota_service.check_quota("missing") is False


@pytest.mark.asyncio
async def test_consume_quota_uses_rpc(fake_db, quota_service):
    fake_db.rows("indb_auth_user_profiles").append(profile("u1", 9, 10))

    assert await quota_service.consume_quota("u1") is True
    assert await quota_service.consume_quota("u1") is False
    assert fake_db.rows("indb_auth_user_profiles")[0]["daily_quota_used"] == 10
    assert ("rpc", "consume_user_quota") in fake_db.calls


@pytest.mark.asyncio
async def test_quota_stats(fake_db, quota_service):
    fake_db.rows("indb_auth_user_profiles").extend([
        profile("u1", 10, 10), profile("u2", 3, 10), profile("u3", 50, -1),
    ])
    assert await quota_service.get_quota_stats() == {
        "total_users": 3, "unlimited_users": 1, "total_used": 63, "exhausted_users": 1,
    }


@pytest.mark.asyncio
async def test_monitor_runs_every_reset_step(fake_db, monitor):
    fake_db.rows("indb_auth_user_profiles").extend([
        profile("u1", 80, 100, reset_date="2024-03-01"),
        profile("u2", 5, 100, reset_date="2024-03-02"),
    ])
    fake_db.rows("indb_google_service_accounts").extend([
        {"id": "sa-quiet", "name": "quiet", "user_id": "u1", "is_active": False},
        {"id": "sa-busy", "name": "busy", "user_id": "u2", "is_active": False},
    ])
    fake_db.rows("indb_google_quota_usage").extend([
        {"service_account_id": "sa-quiet", "date": "2024-03-02", "requests_made": 3},
        {"service_account_id": "sa-busy", "date": "2024-03-02", "requests_made": 180},
    ])
    fake_db.rows("indb_indexing_jobs").extend([
        {"id": "job-1", "user_id": "u1", "name": "sitemap", "status": "paused",
         "error_message": "Paused: Quota exhausted for all service accounts"},
        {"id": "job-2", "user_id": "u2", "name": "manual", "status": "paused",
         "error_message": "Quota exhausted"},
        {"id": "job-3", "user_id": "u1", "name": "other", "status": "paused", "error_message": "Paused by user"},
    ])
    fake_db.rows("indb_notifications_dashboard").extend([
        {"id": "n-old", "type": "service_account_quota_exhausted", "created_at": "2024-03-01T00:00:00+00:00"},
        {"id": "n-new", "type": "service_account_quota_exhausted", "created_at": "2024-03-01T23:00:00+00:00"},
        {"id": "n-other", "type": "billing", "created_at": "2024-02-01T00:00:00+00:00"},
    ])

    summary = await monitor.check_and_reactivate_accounts()

    assert summary == {
        "errors": [],
        "quotas_reset": 1,
        "accounts_reactivated": 1,
        "jobs_resumed": 1,
        "notifications_deleted": 1,
    }
    profiles = {p["user_id"]: p for p in fake_db.rows("indb_auth_user_profiles")}
    assert profiles["u1"]["daily_quota_used"] == 0
    assert profiles["u1"]["quota_reset_date"] == "2024-03-02"
    assert profiles["u2"]["daily_quota_used"] == 5

    accounts = {a["id"]: a["is_active"] for a in fake_db.rows("indb_google_service_accounts")}
    assert accounts == {"sa-quiet": True, "sa-busy": False}
    jobs = {j["id"]: j["status"] for j in fake_db.rows("indb_indexing_jobs")}
    assert jobs == {"job-1": "pending", "job-2": "paused", "job-3": "paused"}
    assert [n["id"] for n in fake_db.rows("indb_notifications_dashboard")] == ["n-new", "n-other"]


@pytest.mark.asyncio
async def test_monitor_step_failure_does_not_stop_other_steps(fake_db, monitor):
    fake_db.rows("indb_auth_user_profiles").append(profile("u1", 80, 100, reset_date="2024-03-01"))
    fake_db.fail_on[("select", "indb_google_service_accounts")] = DatabaseError("timeout")

    summary = await monitor.check_and_reactivate_accounts()

    assert summary["quotas_reset"] == 1
    assert summary["accounts_reactivated"] == 0
    steps = [e["step"] for e in summary["errors"]]
    assert steps == ["accounts_reactivated"]


@pytest.mark.asyncio
async def test_monitor_raises_when_every_step_fails(fake_db, monitor):
    for method, table in [
        ("update", "indb_auth_user_profiles"),
        ("select", "indb_google_service_accounts"),
        ("select", "indb_indexing_jobs"),
        ("delete", "indb_notifications_dashboard"),
    ]:
        fake_db.fail_on[(method, table)] = DatabaseError(f"{table} unavailable")

    with pytest.raises(DatabaseError):
        await monitor.check_and_reactivate_accounts()


@pytest.mark.asyncio
async def test_quota_reset_job_delegates_to_monitor(worker_context, fake_db):
    fake_db.rows("indb_auth_user_profiles").append(profile("u1", 7, 10, reset_date="2000-01-01"))
    job = Job(
        id="repeat:quota-reset-hourly:1",
        name="quota-reset-hourly",
        queue="quota-reset",
        data={"scheduledAt": "2024-03-02T00:05:00Z"},
        created_at="2024-03-02T00:05:00Z",
    )

    summary = await process_quota_reset(job, worker_context)

    assert summary["quotas_reset"] == 1
    assert fake_db.rows("indb_auth_user_profiles")[0]["daily_quota_used"] == 0
