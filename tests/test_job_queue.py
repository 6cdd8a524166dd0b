"""Tests for the Redis-backed job queue: enqueue, retry policy, failed store, repeatables, locks."""

import pytest

from indexnow_worker.errors import ExternalServiceError, NotFoundError, PayloadValidationError
from indexnow_worker.queue.job_queue import (
    Backoff,
    JobOptions,
    JobQueue,
    JobStatus,
    RepeatOptions,
    RetentionPolicy,
)


@pytest.fixture
def queue(fake_redis, clock) -> JobQueue:
    return JobQueue("rank-check", fake_redis, prefix="test", clock=clock)


def test_exponential_backoff_doubles_from_two_seconds():
    backoff = Backoff()
    assert [backoff.get_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert Backoff(type="fixed", delay_ms=500).get_delay(3) == 0.5


def test_default_options_match_queue_defaults():
    opts = JobOptions()
    assert opts.attempts == 3
    assert opts.backoff.delay_ms == 2000
    assert opts.remove_on_complete.age_seconds == 24 * 3600
    assert opts.remove_on_complete.count == 1000
    assert opts.remove_on_fail.age_seconds == 7 * 24 * 3600


@pytest.mark.asyncio
async def test_add_then_dequeue_and_complete(queue, fake_redis):
    job = await queue.add("check", {"keywordId": "k1"}, job_id="job-1")
    assert job.status == JobStatus.WAITING

    claimed = await queue.dequeue()
    assert claimed.id == "job-1"
    assert claimed.attempts_made == 1
    assert claimed.status == JobStatus.ACTIVE
    assert await queue.dequeue() is None

    await queue.complete(claimed, {"position": 3})
    stored = await queue.get_job("job-1")
    assert stored.status == JobStatus.COMPLETED
    assert stored.return_value == {"position": 3}
    counts = await queue.get_counts()
    assert counts["completed"] == 1
    assert counts["active"] == 0


@pytest.mark.asyncio
async def test_duplicate_job_id_is_not_enqueued_twice(queue):
    await queue.add("check", {"n": 1}, job_id="same")
    again = await queue.add("check", {"n": 2}, job_id="same")

    assert again.data == {"n": 1}
    assert (await queue.get_counts())["waiting"] == 1
    assert await queue.add_unique("check", {"n": 3}, "same") is False
    assert await queue.add_unique("check", {"n": 3}, "other") is True


@pytest.mark.asyncio
async def test_delayed_job_becomes_ready_after_delay(queue, clock):
    await queue.add("check", {}, job_id="later", delay_seconds=30)

    counts = await queue.get_counts()
    assert counts["delayed"] == 1
    assert counts["waiting"] == 0
    assert await queue.dequeue() is None

    clock.advance(30)
    assert (await queue.dequeue()).id == "later"


@pytest.mark.asyncio
async def test_higher_priority_claimed_first(queue):
    await queue.add("check", {}, job_id="normal")
    await queue.add("check", {}, job_id="urgent", priority=10)

    assert (await queue.dequeue()).id == "urgent"


@pytest.mark.asyncio
async def test_transient_failure_retries_with_backoff_then_fails(queue, fake_redis, clock):
    await queue.add("check", {}, job_id="flaky")
    wait_key = "test:rank-check:wait"

    job = await queue.dequeue()
    assert await queue.fail(job, ExternalServiceError("HTTP 502")) is True
    assert fake_redis.zsets[wait_key]["flaky"] == clock.now + 2

    clock.advance(2)
    job = await queue.dequeue()
    assert job.attempts_made == 2
    assert await queue.fail(job, ExternalServiceError("HTTP 502")) is True
    assert fake_redis.zsets[wait_key]["flaky"] == clock.now + 4

    clock.advance(4)
    job = await queue.dequeue()
    assert job.attempts_made == 3
    assert await queue.fail(job, ExternalServiceError("HTTP 502")) is False

    failed = await queue.get_failed_jobs()
    assert [j.id for j in failed] == ["flaky"]
    assert failed[0].status == JobStatus.FAILED
    assert len(failed[0].error_history) == 3


@pytest.mark.asyncio
async def test_unclassified_exception_is_retried(queue):
    await queue.add("check", {}, job_id="boom")
    job = await queue.dequeue()
    assert await queue.fail(job, RuntimeError("unexpected")) is True


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [PayloadValidationError("bad payload"), NotFoundError("gone")])
async def test_permanent_failure_fails_after_one_attempt(queue, error):
    await queue.add("check", {}, job_id="bad")
    job = await queue.dequeue()

    assert await queue.fail(job, error) is False
    failed = await queue.get_failed_jobs()
    assert failed[0].attempts_made == 1
    assert failed[0].failed_reason == str(error)
    assert (await queue.get_counts())["waiting"] == 0


@pytest.mark.asyncio
async def test_retry_failed_requeues_with_fresh_attempts(queue):
    await queue.add("check", {}, job_id="bad")
    job = await queue.dequeue()
    await queue.fail(job, NotFoundError("gone"))

    retried = await queue.retry_failed("bad")
    assert retried.status == JobStatus.WAITING
    assert retried.attempts_made == 0
    assert (await queue.get_counts())["failed"] == 0
    assert (await queue.dequeue()).id == "bad"
    assert await queue.retry_failed("unknown") is None


@pytest.mark.asyncio
async def test_recover_stalled_requeues_or_fails(queue, clock):
    await queue.add("check", {}, job_id="stuck", attempts=1)
    await queue.add("check", {}, job_id="stuck-retryable")
    await queue.dequeue()
    await queue.dequeue()

    clock.advance(301)
    recovered = await queue.recover_stalled(300)

    assert recovered == 1
    assert (await queue.get_job("stuck-retryable")).status == JobStatus.WAITING
    stuck = await queue.get_job("stuck")
    assert stuck.status == JobStatus.FAILED
    assert "stalled" in stuck.failed_reason


@pytest.mark.asyncio
async def test_heartbeat_keeps_long_running_job_active(queue, clock):
    await queue.add("check", {}, job_id="slow")
    job = await queue.dequeue()

    for _ in range(4):
        clock.advance(200)
        assert await queue.heartbeat(job)
        assert await queue.recover_stalled(300) == 0

    await queue.complete(job, {"position": 1})
    assert await queue.heartbeat(job) is False
    assert await queue.dequeue() is None
    assert (await queue.get_counts())["active"] == 0


@pytest.mark.asyncio
async def test_job_requeued_as_stalled_is_not_run_again_after_it_completes(queue, clock):
    await queue.add("send", {}, job_id="j1")
    job = await queue.dequeue()

    clock.advance(301)
    assert await queue.recover_stalled(300) == 1
    await queue.complete(job, "sent")

    assert await queue.dequeue() is None
    stored = await queue.get_job("j1")
    assert stored.status == JobStatus.COMPLETED
    assert stored.attempts_made == 1


@pytest.mark.asyncio
async def test_job_requeued_as_stalled_is_not_duplicated_by_a_failure(queue, clock):
    await queue.add("send", {}, job_id="j2")
    job = await queue.dequeue()

    clock.advance(301)
    await queue.recover_stalled(300)
    assert await queue.fail(job, NotFoundError("gone")) is False

    assert await queue.dequeue() is None
    assert (await queue.get_job("j2")).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_completed_retention_keeps_newest(fake_redis, clock):
    opts = JobOptions(remove_on_complete=RetentionPolicy(count=2))
    queue = JobQueue("email", fake_redis, prefix="test", default_options=opts, clock=clock)
    for n in range(3):
        await queue.add("send", {}, job_id=f"mail-{n}")
        clock.advance(1)
        await queue.complete(await queue.dequeue())

    assert await fake_redis.zrange("test:email:completed", 0, -1) == ["mail-1", "mail-2"]
    assert await queue.get_job("mail-0") is None


@pytest.mark.asyncio
async def test_repeatable_registration_is_kept_once(queue):
    first = await queue.add("sweep", {"scheduledAt": "x"}, job_id="sweep", repeat=RepeatOptions(pattern="0 * * * *"))
    second = await queue.add_repeatable("sweep", {}, RepeatOptions(pattern="30 * * * *"), key="sweep")

    assert second.pattern == "0 * * * *"
    assert second.next_run_at == first.next_run_at
    assert len(await queue.get_repeatable_jobs()) == 1


@pytest.mark.asyncio
async def test_repeatable_rejects_invalid_pattern(queue):
    with pytest.raises(ValueError):
        await queue.add("sweep", {}, job_id="sweep", repeat=RepeatOptions(pattern="not a cron"))


@pytest.mark.asyncio
async def test_promote_enqueues_once_per_fire_time(queue, clock):
    clock.now = 1_700_000_100.0  # 22:15:00 UTC
    registration = await queue.add(
        "sweep", {"scheduledAt": "registered"}, job_id="sweep", repeat=RepeatOptions(pattern="0 * * * *")
    )
    assert await queue.promote_repeatables() == 0

    clock.now = registration.next_run_at
    assert await queue.promote_repeatables() == 1
    assert await queue.promote_repeatables() == 0

    job = await queue.dequeue()
    assert job.id == f"repeat:sweep:{int(registration.next_run_at * 1000)}"
    assert job.data["scheduledAt"].startswith("2023-11-14T23:00:00")
    (updated,) = await queue.get_repeatable_jobs()
    assert updated.next_run_at == registration.next_run_at + 3600


@pytest.mark.asyncio
async def test_lock_is_exclusive_and_owner_checked(queue):
    token = await queue.acquire_lock("sweep:auto-cancel", 60)
    assert token
    assert await queue.acquire_lock("sweep:auto-cancel", 60) is None
    assert await queue.release_lock("sweep:auto-cancel", "not-the-owner") is False

    info = await queue.get_lock_info("sweep:auto-cancel")
    assert info["token"] == token

    assert await queue.release_lock("sweep:auto-cancel", token) is True
    assert await queue.acquire_lock("sweep:auto-cancel", 60)
