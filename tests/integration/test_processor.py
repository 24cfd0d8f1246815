"""End-to-end processing of workflow jobs."""

import asyncio

import pytest

from cadence.capabilities import CapabilityResolver
from cadence.config import ProcessorConfig
from cadence.dispatch import WorkflowDispatcher
from cadence.errors import StoreUnavailable
from cadence.jobs import InMemoryJobStore, JobStatus
from cadence.persistence import InMemoryWorkflowStateStore, InstanceStatus
from cadence.processor import JobProcessor
from cadence.triggers import TriggerDispatcher


def _processor(job_store, state_store, registry, capabilities, config):
    return JobProcessor(job_store, state_store, registry, capabilities, config=config, worker_id="w")


@pytest.mark.asyncio
async def test_sequential_workflow_completes(job_store, state_store, registry, outreach, fast_config):
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"}, "high")
    assert receipt.status_url == f"/api/workflows/{receipt.job_id}"

    processor = _processor(job_store, state_store, registry, outreach.resolver(), fast_config)
    job = await processor.run_once()
    assert job.id == receipt.job_id

    status = await dispatcher.status(receipt.job_id)
    assert status.job_status == JobStatus.COMPLETED
    assert status.progress == 100.0
    assert status.instance_status == InstanceStatus.COMPLETED
    assert status.completed_steps == ["classify", "decide", "send"]
    assert status.result["status"] == "completed"

    inst = await state_store.get_instance(receipt.job_id)
    assert inst.context["send"] == {"message_id": "msg-a@b.com"}
    assert inst.correlation_key == "a@b.com"
    assert processor.health().processed == 1


@pytest.mark.asyncio
async def test_submit_rejects_missing_inputs(job_store, state_store, registry):
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    with pytest.raises(ValueError, match="prospect_email"):
        await dispatcher.submit("re-engagement", {})
    assert await job_store.list_jobs() == []


@pytest.mark.asyncio
async def test_crashed_worker_resumes_without_repeating_steps(
    job_store, state_store, registry, outreach, fast_config
):
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})
    defn = registry.get("re-engagement")

    # first worker records classify, then dies before finishing the job
    crashed = _processor(job_store, state_store, registry, outreach.resolver(), fast_config)
    job = await job_store.claim("crashed", 300)
    instance = await crashed._start(job)
    await crashed.executor.execute_step(instance, defn.step("classify"))

    survivor = _processor(
        job_store,
        state_store,
        registry,
        outreach.resolver(),
        fast_config.model_copy(update={"visibility_timeout": 0}),
    )
    reclaimed = await survivor.run_once()

    assert reclaimed.id == receipt.job_id
    assert reclaimed.attempt == 2
    assert outreach.calls == {"classify_reply": 1, "decide_action": 1, "send_email": 1}
    inst = await state_store.get_instance(receipt.job_id)
    assert inst.status == InstanceStatus.COMPLETED
    assert [s.step_name for s in sorted(inst.steps, key=lambda s: s.seq)] == ["classify", "decide", "send"]


@pytest.mark.asyncio
async def test_unsubscribe_reply_auto_stops_before_sending(
    job_store, state_store, registry, outreach_factory, fast_config
):
    outreach = outreach_factory(sentiment="unsubscribe")
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})

    processor = _processor(job_store, state_store, registry, outreach.resolver(), fast_config)
    await processor.run_once()

    inst = await state_store.get_instance(receipt.job_id)
    assert inst.status == InstanceStatus.STOPPED
    assert "stop-on-unsubscribe" in inst.failure_reason
    assert inst.failures[-1].step_name == "classify"
    assert "send_email" not in outreach.calls
    assert "decide_action" not in outreach.calls
    job = await job_store.status(receipt.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result["status"] == "stopped"


@pytest.mark.asyncio
async def test_rate_limit_blocks_second_email(job_store, state_store, registry, outreach, fast_config):
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    first = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})
    second = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})

    processor = _processor(job_store, state_store, registry, outreach.resolver(), fast_config)
    await processor.run_once()
    await processor.run_once()

    assert (await state_store.get_instance(first.job_id)).status == InstanceStatus.COMPLETED
    blocked = await state_store.get_instance(second.job_id)
    assert blocked.status == InstanceStatus.FAILED
    assert blocked.failure_reason.startswith("GuardrailBlocked")
    assert outreach.calls["send_email"] == 1
    assert (await job_store.status(second.job_id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_capability_failure_fails_instance_and_job(job_store, state_store, registry, fast_config):
    def broken(inputs):
        raise RuntimeError("CRM unavailable")

    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})
    processor = _processor(
        job_store, state_store, registry, CapabilityResolver({"classify_reply": broken}), fast_config
    )
    await processor.run_once()

    inst = await state_store.get_instance(receipt.job_id)
    assert inst.status == InstanceStatus.FAILED
    assert inst.failure_reason.startswith("CapabilityError")
    job = await job_store.status(receipt.job_id)
    assert job.status == JobStatus.FAILED
    assert "CRM unavailable" in job.error
    assert processor.health().processed == 1


@pytest.mark.asyncio
async def test_cancel_takes_effect_at_next_step_boundary(job_store, state_store, registry, outreach, fast_config):
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})
    resolver = outreach.resolver()

    async def decide_then_cancel(inputs):
        await dispatcher.cancel(receipt.job_id)
        return {"action": "follow_up"}

    resolver.register("decide_action", decide_then_cancel)
    processor = _processor(job_store, state_store, registry, resolver, fast_config)
    await processor.run_once()

    inst = await state_store.get_instance(receipt.job_id)
    assert inst.status == InstanceStatus.CANCELLED
    assert list(inst.context) == ["classify"]
    assert "send_email" not in outreach.calls
    assert (await job_store.status(receipt.job_id)).result["status"] == "cancelled"


@pytest.mark.asyncio
async def test_cancel_pending_job(job_store, state_store, registry):
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})
    assert await dispatcher.cancel(receipt.job_id)
    status = await dispatcher.status(receipt.job_id)
    assert status.job_status == JobStatus.CANCELLED
    assert status.instance_id is None


@pytest.mark.asyncio
async def test_worker_pool_drains_queue(job_store, state_store, registry, outreach, fast_config):
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    emails = [f"p{i}@example.com" for i in range(6)]
    for email in emails:
        await dispatcher.submit("re-engagement", {"prospect_email": email})

    processor = _processor(job_store, state_store, registry, outreach.resolver(), fast_config)
    await processor.run(lifespan=1.0)

    stats = await job_store.stats()
    assert stats.completed == 6
    assert outreach.calls["send_email"] == 6
    assert processor.health().active_jobs == 0


class _BrokenStore(InMemoryJobStore):
    async def claim(self, worker_id, visibility_timeout):
        raise ConnectionError("database is down")


@pytest.mark.asyncio
async def test_store_outage_marks_processor_unhealthy(state_store, registry, outreach, monkeypatch):
    async def no_wait(attempt, base=1.5, max_delay=None):
        return None

    monkeypatch.setattr("cadence.processor.schedule_retry", no_wait)
    processor = _processor(
        _BrokenStore(), state_store, registry, outreach.resolver(), ProcessorConfig(max_store_failures=2)
    )

    assert await processor.run_once() is None
    assert processor.health().healthy
    with pytest.raises(StoreUnavailable):
        await processor.run_once()
    health = processor.health()
    assert not health.healthy
    assert health.consecutive_store_failures == 2
    assert "database is down" in health.last_error


@pytest.mark.asyncio
async def test_pool_stops_when_store_is_unavailable(state_store, registry, outreach, monkeypatch):
    async def no_wait(attempt, base=1.5, max_delay=None):
        await asyncio.sleep(0)

    monkeypatch.setattr("cadence.processor.schedule_retry", no_wait)
    processor = _processor(
        _BrokenStore(), state_store, registry, outreach.resolver(), ProcessorConfig(max_store_failures=3)
    )
    with pytest.raises(StoreUnavailable):
        await processor.run(lifespan=5.0)


@pytest.mark.asyncio
async def test_auto_stop_applies_when_worker_died_after_recording(
    job_store, state_store, registry, outreach_factory, fast_config
):
    outreach = outreach_factory(sentiment="unsubscribe")
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})
    defn = registry.get("re-engagement")

    # classify is recorded, but the worker dies before its post-step rules run
    crashed = _processor(job_store, state_store, registry, outreach.resolver(), fast_config)
    job = await job_store.claim("crashed", 300)
    instance = await crashed._start(job)
    await crashed.executor.execute_step(instance, defn.step("classify"))

    survivor = _processor(
        job_store,
        state_store,
        registry,
        outreach.resolver(),
        fast_config.model_copy(update={"visibility_timeout": 0}),
    )
    await survivor.run_once()

    inst = await state_store.get_instance(receipt.job_id)
    assert inst.status == InstanceStatus.STOPPED
    assert "stop-on-unsubscribe" in inst.failure_reason
    assert outreach.calls == {"classify_reply": 1}
    assert (await job_store.status(receipt.job_id)).result["status"] == "stopped"


class _FlakyStateStore(InMemoryWorkflowStateStore):
    """Raises a connection error on selected ``get_instance`` calls."""

    def __init__(self, failing_calls):
        super().__init__()
        self.failing_calls = set(failing_calls)
        self.reads = 0

    async def get_instance(self, instance_id):
        self.reads += 1
        if self.reads in self.failing_calls:
            raise ConnectionError("transient blip")
        return await super().get_instance(instance_id)


@pytest.mark.asyncio
async def test_transient_state_store_error_is_retried(job_store, registry, outreach, fast_config, monkeypatch):
    async def no_wait(attempt, base=1.5, max_delay=None):
        return None

    monkeypatch.setattr("cadence.processor.schedule_retry", no_wait)
    state_store = _FlakyStateStore(failing_calls={3})
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})

    processor = _processor(job_store, state_store, registry, outreach.resolver(), fast_config)
    await processor.run_once()

    inst = await state_store.get_instance(receipt.job_id)
    assert inst.status == InstanceStatus.COMPLETED
    assert (await job_store.status(receipt.job_id)).status == JobStatus.COMPLETED
    assert outreach.calls == {"classify_reply": 1, "decide_action": 1, "send_email": 1}
    health = processor.health()
    assert health.healthy
    assert health.consecutive_store_failures == 0
    assert "transient blip" in health.last_error


@pytest.mark.asyncio
async def test_persistent_state_store_outage_leaves_job_for_reclaim(
    job_store, registry, outreach, fast_config, monkeypatch
):
    async def no_wait(attempt, base=1.5, max_delay=None):
        return None

    monkeypatch.setattr("cadence.processor.schedule_retry", no_wait)
    state_store = _FlakyStateStore(failing_calls=range(2, 100))
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("re-engagement", {"prospect_email": "a@b.com"})

    processor = _processor(
        job_store,
        state_store,
        registry,
        outreach.resolver(),
        fast_config.model_copy(update={"max_store_failures": 3}),
    )
    with pytest.raises(StoreUnavailable):
        await processor.run_once()

    assert not processor.health().healthy
    assert processor.health().consecutive_store_failures == 3
    assert (await job_store.status(receipt.job_id)).status == JobStatus.PROCESSING
    state_store.failing_calls.clear()
    inst = await state_store.get_instance(receipt.job_id)
    assert inst.status == InstanceStatus.RUNNING
    assert inst.failures == []


REVIEWED_OUTREACH = """
name: reviewed-outreach
mode: reactive
inputs: [prospect_email]
correlation: inputs.prospect_email
steps:
  - name: draft
    capability: classify_reply
    inputs:
      email: inputs.prospect_email
    outputs: [sentiment, confidence]
    default: {flow: delivery}
  - name: approve
    capability: record_approval
    inputs:
      email: inputs.prospect_email
    outputs: [approved]
    default: {flow: delivery}
  - name: send
    capability: send_email
    inputs:
      email: inputs.prospect_email
    outputs: [message_id]
flows:
  outreach: [draft]
  review: [approve]
  delivery: [send]
entry: outreach
guardrails:
  - name: needs-review
    kind: predicate
    stage: post
    steps: [draft]
    action: escalate
    when:
      kind: compare
      field: draft.confidence
      op: lt
      value: 0.6
triggers:
  - event: review_approved
    flow: review
    action: resume
    correlation_field: email
    idempotency_key: review_id
"""


@pytest.mark.asyncio
async def test_escalation_suspends_until_review_resumes_it(
    job_store, state_store, registry, outreach_factory, fast_config
):
    registry.load(REVIEWED_OUTREACH)
    outreach = outreach_factory(confidence=0.3)
    resolver = outreach.resolver()
    resolver.register("record_approval", lambda inputs: {"approved": True})
    dispatcher = WorkflowDispatcher(job_store, registry, state_store)
    receipt = await dispatcher.submit("reviewed-outreach", {"prospect_email": "a@b.com"})

    processor = _processor(job_store, state_store, registry, resolver, fast_config)
    await processor.run_once()

    held = await state_store.get_instance(receipt.job_id)
    assert held.status == InstanceStatus.SUSPENDED
    [escalation] = held.failures
    assert escalation.kind == "escalation"
    assert escalation.step_name == "draft"
    assert "needs-review" in escalation.message
    assert "send_email" not in outreach.calls
    assert (await job_store.status(receipt.job_id)).result["status"] == "suspended"

    triggers = TriggerDispatcher(registry, job_store, state_store, fast_config)
    [result] = await triggers.dispatch("review_approved", {"email": "a@b.com", "review_id": "r1"})
    assert result.woke
    await processor.run_once()

    reviewed = await state_store.get_instance(receipt.job_id)
    assert reviewed.status == InstanceStatus.SUSPENDED
    assert list(reviewed.context) == ["draft", "approve", "send"]
    assert outreach.calls["send_email"] == 1
    assert len(reviewed.failures) == 1
