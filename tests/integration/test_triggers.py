"""Reactive workflows: starting, waking and resuming from external events."""

import asyncio

import pytest

from cadence.contracts import EventEnvelope
from cadence.jobs import JobKind, JobPriority, JobStatus
from cadence.persistence import InstanceStatus
from cadence.processor import JobProcessor
from cadence.transports import InMemoryTransport
from cadence.triggers import TriggerDispatcher


@pytest.fixture
def dispatcher(registry, job_store, state_store, fast_config):
    return TriggerDispatcher(registry, job_store, state_store, fast_config)


@pytest.fixture
def processor(registry, job_store, state_store, outreach, fast_config):
    return JobProcessor(job_store, state_store, registry, outreach.resolver(), config=fast_config)


async def _started(dispatcher, processor, state_store, email="a@b.com"):
    [result] = await dispatcher.dispatch("lead_created", {"prospect_email": email, "lead_id": "L1"})
    assert result.outcome == "enqueued"
    await processor.run_once()
    inst = await state_store.get_instance(result.instance_id)
    assert inst.status == InstanceStatus.SUSPENDED
    return inst


@pytest.mark.asyncio
async def test_start_trigger_runs_entry_flow_then_suspends(dispatcher, processor, state_store, job_store):
    inst = await _started(dispatcher, processor, state_store)

    assert inst.current_flow == "outreach"
    assert list(inst.context) == ["open"]
    assert inst.correlation_key == "a@b.com"
    assert [e.event_name for e in inst.events] == ["lead_created"]
    job = await job_store.status(inst.id)
    assert job.status == JobStatus.COMPLETED
    assert job.result["status"] == "suspended"


@pytest.mark.asyncio
async def test_duplicate_start_event_is_enqueued_once(dispatcher, job_store):
    payload = {"prospect_email": "a@b.com", "lead_id": "L1"}
    [first] = await dispatcher.dispatch("lead_created", payload)
    [second] = await dispatcher.dispatch("lead_created", payload)

    assert first.job_id == second.job_id
    assert len(await job_store.list_jobs()) == 1


@pytest.mark.asyncio
async def test_start_trigger_condition_filters(dispatcher, job_store):
    [result] = await dispatcher.dispatch("lead_created", {"lead_id": "L1"})
    assert result.outcome == "skipped"
    assert dispatcher.stats.filtered == 1
    assert await job_store.list_jobs() == []


@pytest.mark.asyncio
async def test_reply_wakes_and_resumes_instance(dispatcher, processor, state_store, job_store, outreach):
    inst = await _started(dispatcher, processor, state_store)

    [result] = await dispatcher.dispatch(
        "prospect_replied", {"email": "a@b.com", "body": "Tell me more", "message_id": "m1"}
    )
    assert result.outcome == "injected"
    assert result.woke
    assert result.instance_id == inst.id
    resume = await job_store.status(result.job_id)
    assert resume.kind == JobKind.RESUME.value
    assert resume.priority == JobPriority.HIGH

    await processor.run_once()

    resumed = await state_store.get_instance(inst.id)
    assert resumed.status == InstanceStatus.SUSPENDED
    assert resumed.current_flow == "reply"
    assert list(resumed.context) == ["open", "handle_reply"]
    assert resumed.pending_flows == []
    assert outreach.calls == {"send_email": 1, "classify_reply": 1}


@pytest.mark.asyncio
async def test_redelivered_reply_is_ignored(dispatcher, processor, state_store, job_store):
    inst = await _started(dispatcher, processor, state_store)
    payload = {"email": "a@b.com", "body": "yes", "message_id": "m1"}

    [first] = await dispatcher.dispatch("prospect_replied", payload)
    [again] = await dispatcher.dispatch("prospect_replied", payload)

    assert first.woke
    assert not again.woke
    assert again.job_id is None
    current = await state_store.get_instance(inst.id)
    assert [e.event_name for e in current.events] == ["lead_created", "prospect_replied"]
    assert len(await job_store.list_jobs(kind="resume")) == 1


@pytest.mark.asyncio
async def test_redelivered_reply_requeues_lost_resume_job(
    dispatcher, processor, state_store, job_store, monkeypatch
):
    inst = await _started(dispatcher, processor, state_store)
    payload = {"email": "a@b.com", "body": "yes", "message_id": "m1"}
    enqueue = job_store.enqueue

    async def crash(*args, **kwargs):
        raise ConnectionError("dispatcher lost its job store")

    monkeypatch.setattr(job_store, "enqueue", crash)
    with pytest.raises(ConnectionError):
        await dispatcher.dispatch("prospect_replied", payload)
    stranded = await state_store.get_instance(inst.id)
    assert stranded.status == InstanceStatus.RUNNING
    assert not await job_store.has_active_job(inst.id)

    monkeypatch.setattr(job_store, "enqueue", enqueue)
    [again] = await dispatcher.dispatch("prospect_replied", payload)
    assert not again.woke
    assert again.job_id is not None
    assert len(await job_store.list_jobs(kind="resume")) == 1

    await processor.run_once()
    resumed = await state_store.get_instance(inst.id)
    assert resumed.status == InstanceStatus.SUSPENDED
    assert list(resumed.context) == ["open", "handle_reply"]
    assert [e.event_name for e in resumed.events] == ["lead_created", "prospect_replied"]


@pytest.mark.asyncio
async def test_reply_without_matching_instance(dispatcher):
    [missing] = await dispatcher.dispatch("prospect_replied", {"email": "nobody@x.com", "message_id": "m1"})
    assert missing.outcome == "skipped"
    [uncorrelated] = await dispatcher.dispatch("prospect_replied", {"message_id": "m2"})
    assert uncorrelated.outcome == "skipped"
    assert await dispatcher.dispatch("meeting_booked", {}) == []

    assert dispatcher.stats.unknown_instance == 1
    assert dispatcher.stats.missing_correlation == 1
    assert dispatcher.stats.unmatched == 1


@pytest.mark.asyncio
async def test_concurrent_replies_are_serialized(dispatcher, processor, state_store, job_store):
    inst = await _started(dispatcher, processor, state_store)

    results = await asyncio.gather(
        *(
            dispatcher.dispatch(
                "prospect_replied",
                {"email": "a@b.com", "body": f"reply {i}", "message_id": f"m{i}"},
                correlation_key="a@b.com",
            )
            for i in range(4)
        )
    )
    flat = [r for batch in results for r in batch]

    assert all(r.outcome == "injected" for r in flat)
    assert sum(r.woke for r in flat) == 1
    current = await state_store.get_instance(inst.id)
    assert len(current.events) == 5
    assert current.pending_flows == ["reply"] * 4
    assert len(await job_store.list_jobs(kind="resume")) == 1

    # one resume job drains every pending flow
    await processor.run_once()
    drained = await state_store.get_instance(inst.id)
    assert drained.pending_flows == []
    assert drained.status == InstanceStatus.SUSPENDED


@pytest.mark.asyncio
async def test_events_for_closed_instance_are_skipped(dispatcher, processor, state_store):
    inst = await _started(dispatcher, processor, state_store)
    await state_store.request_cancel(inst.id)

    [result] = await dispatcher.dispatch("prospect_replied", {"email": "a@b.com", "message_id": "m1"})
    assert result.outcome == "skipped"


@pytest.mark.asyncio
async def test_listen_dispatches_transport_events(dispatcher, state_store, job_store):
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish(
        "events",
        EventEnvelope(name="lead_created", payload={"prospect_email": "a@b.com", "lead_id": "L9"}),
    )

    await dispatcher.listen(transport, "events", lifespan=0.2)

    assert dispatcher.stats.started == 1
    [job] = await job_store.list_jobs()
    assert job.payload["event"]["name"] == "lead_created"
