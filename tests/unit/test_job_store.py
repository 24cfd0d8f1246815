"""Job store behaviour shared by the in-memory and SQLite backends."""

import asyncio

import pytest

from cadence.errors import JobNotFound
from cadence.jobs import JobPriority, JobStatus, get_job_store
from cadence.jobs.inmemory import InMemoryJobStore
from cadence.jobs.sqlite import SQLiteJobStore
from cadence.retention import RetentionPolicy


@pytest.mark.asyncio
async def test_claim_order_priority_then_fifo(job_store):
    low = await job_store.enqueue("workflow", {"n": 1}, JobPriority.LOW)
    first_normal = await job_store.enqueue("workflow", {"n": 2})
    second_normal = await job_store.enqueue("workflow", {"n": 3})
    critical = await job_store.enqueue("workflow", {"n": 4}, "critical")

    claimed = []
    while (job := await job_store.claim("w1", 300)) is not None:
        claimed.append(job.id)

    assert claimed == [critical, first_normal, second_normal, low]


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(job_store):
    ids = {await job_store.enqueue("workflow", {"n": i}) for i in range(3)}

    results = await asyncio.gather(*(job_store.claim(f"w{i}", 300) for i in range(6)))
    claimed = [job for job in results if job is not None]

    assert len(claimed) == 3
    assert {job.id for job in claimed} == ids
    assert all(job.status == JobStatus.PROCESSING for job in claimed)


@pytest.mark.asyncio
async def test_abandoned_job_is_reclaimed_with_next_attempt(job_store):
    job_id = await job_store.enqueue("workflow", {})
    first = await job_store.claim("crashed", 300)
    assert first.attempt == 1

    # still within the visibility timeout
    assert await job_store.claim("other", 300) is None

    second = await job_store.claim("other", 0)
    assert second.id == job_id
    assert second.attempt == 2
    assert second.claimed_by == "other"

    # the original claimant can no longer finish the job
    assert not await job_store.complete(job_id, {"ok": True}, "crashed")
    assert await job_store.complete(job_id, {"ok": True}, "other")
    done = await job_store.status(job_id)
    assert done.status == JobStatus.COMPLETED
    assert done.progress == 100.0
    assert done.result == {"ok": True}


@pytest.mark.asyncio
async def test_dedupe_key_returns_existing_job(job_store):
    first = await job_store.enqueue("workflow", {"a": 1}, dedupe_key="lead:42")
    second = await job_store.enqueue("workflow", {"a": 2}, dedupe_key="lead:42")

    assert first == second
    jobs = await job_store.list_jobs()
    assert len(jobs) == 1
    assert jobs[0].payload == {"a": 1}


@pytest.mark.asyncio
async def test_cancel_only_pending(job_store):
    pending = await job_store.enqueue("workflow", {})
    running = await job_store.enqueue("workflow", {}, "high")
    await job_store.claim("w1", 300)

    assert await job_store.cancel(pending)
    assert not await job_store.cancel(running)
    assert (await job_store.status(pending)).status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_retry_creates_new_attempt(job_store):
    job_id = await job_store.enqueue("workflow", {"x": 1}, "high")
    await job_store.claim("w1", 300)
    await job_store.fail(job_id, "boom", "w1")

    new_id = await job_store.retry(job_id)
    retried = await job_store.status(new_id)
    assert new_id != job_id
    assert retried.status == JobStatus.PENDING
    assert retried.attempt == 2
    assert retried.retry_of == job_id
    assert retried.priority == JobPriority.HIGH
    assert retried.payload == {"x": 1}


@pytest.mark.asyncio
async def test_retry_rejects_active_job(job_store):
    job_id = await job_store.enqueue("workflow", {})
    with pytest.raises(ValueError):
        await job_store.retry(job_id)
    with pytest.raises(JobNotFound):
        await job_store.retry("missing")


@pytest.mark.asyncio
async def test_progress_and_stats(job_store):
    job_id = await job_store.enqueue("workflow", {})
    await job_store.enqueue("resume", {})
    await job_store.claim("w1", 300)
    await job_store.update_progress(job_id, 150)

    assert (await job_store.status(job_id)).progress == 100.0
    stats = await job_store.stats()
    assert stats.total == 2
    assert stats.processing == 1
    assert stats.pending == 1
    assert [j.kind for j in await job_store.list_jobs(kind="resume")] == ["resume"]
    assert len(await job_store.list_jobs(status="processing")) == 1


@pytest.mark.asyncio
async def test_status_of_unknown_job(job_store):
    with pytest.raises(JobNotFound):
        await job_store.status("nope")


@pytest.mark.asyncio
async def test_purge_removes_only_old_terminal_jobs(job_store):
    done = await job_store.enqueue("workflow", {})
    await job_store.claim("w1", 300)
    await job_store.complete(done, {}, "w1")
    pending = await job_store.enqueue("workflow", {})

    assert await job_store.purge(RetentionPolicy(max_age_days=30)) == 0
    assert await job_store.purge(RetentionPolicy(max_age_days=0, statuses=frozenset({"failed"}))) == 0
    assert await job_store.purge(RetentionPolicy(max_age_days=0)) == 1

    with pytest.raises(JobNotFound):
        await job_store.status(done)
    assert (await job_store.status(pending)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_purge_rejects_non_terminal_status(job_store):
    with pytest.raises(ValueError):
        await job_store.purge(RetentionPolicy(max_age_days=1, statuses=frozenset({"pending"})))


def test_retention_days_must_be_integer():
    with pytest.raises(ValueError):
        RetentionPolicy(max_age_days="30; DROP TABLE jobs")
    with pytest.raises(ValueError):
        RetentionPolicy(max_age_days=-1)


@pytest.mark.asyncio
async def test_rate_slots_are_reused_by_token(job_store):
    assert await job_store.reserve_slot("send:a@b.com", "i1:send", 1, 60)
    # the same owner asking again keeps its reservation
    assert await job_store.reserve_slot("send:a@b.com", "i1:send", 1, 60)
    assert not await job_store.reserve_slot("send:a@b.com", "i2:send", 1, 60)
    assert await job_store.count_slots("send:a@b.com", 60) == 1

    await job_store.release_slot("send:a@b.com", "i1:send")
    assert await job_store.reserve_slot("send:a@b.com", "i2:send", 1, 60)


@pytest.mark.asyncio
async def test_concurrent_reservations_respect_limit(job_store):
    results = await asyncio.gather(
        *(job_store.reserve_slot("send:x", f"i{i}:send", 2, 60) for i in range(5))
    )
    assert sum(results) == 2


def test_factory_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_job_store(), InMemoryJobStore)
    store = get_job_store(f"sqlite://{tmp_path / 'jobs.db'}")
    assert isinstance(store, SQLiteJobStore)

    monkeypatch.setenv("CADENCE_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    assert isinstance(get_job_store(), SQLiteJobStore)

    with pytest.raises(ValueError):
        get_job_store("mysql://localhost/db")


@pytest.mark.asyncio
async def test_has_active_job_tracks_workflow_and_resume_jobs(job_store):
    workflow_id = await job_store.enqueue("workflow", {"workflow": "reply-handler"})
    assert await job_store.has_active_job(workflow_id)

    await job_store.claim("w1", 300)
    assert await job_store.has_active_job(workflow_id)
    await job_store.complete(workflow_id, {}, "w1")
    assert not await job_store.has_active_job(workflow_id)

    resume_id = await job_store.enqueue("resume", {"instance_id": workflow_id})
    assert await job_store.has_active_job(workflow_id)
    assert not await job_store.has_active_job("someone-else")
    assert await job_store.cancel(resume_id)
    assert not await job_store.has_active_job(workflow_id)
