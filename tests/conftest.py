"""Shared fixtures: stores for every local backend and sample definitions."""

from pathlib import Path

import pytest

from cadence.capabilities import CapabilityResolver
from cadence.config import ProcessorConfig
from cadence.definitions import DefinitionRegistry
from cadence.jobs import InMemoryJobStore, SQLiteJobStore
from cadence.persistence import InMemoryWorkflowStateStore, SQLiteWorkflowStateStore

REENGAGEMENT = """
name: re-engagement
version: 1
description: Classify a reply, decide what to do, then send a follow-up.
inputs: [prospect_email]
correlation: inputs.prospect_email
steps:
  - name: classify
    capability: classify_reply
    inputs:
      email: inputs.prospect_email
    outputs: [sentiment, confidence]
    quality_gates:
      - field: confidence
        min: 0.5
  - name: decide
    capability: decide_action
    inputs:
      sentiment: classify.sentiment
    outputs: [action]
  - name: send
    capability: send_email
    inputs:
      email: inputs.prospect_email
      action: decide.action
    outputs: [message_id]
guardrails:
  - name: stop-on-unsubscribe
    kind: predicate
    stage: post
    steps: [classify]
    action: auto_stop
    when:
      kind: compare
      field: classify.sentiment
      value: unsubscribe
  - name: one-email-per-day
    kind: rate_limit
    steps: [send]
    key: inputs.prospect_email
    limit: 1
    window_seconds: 86400
"""

REPLY_HANDLER = """
name: reply-handler
mode: reactive
inputs: [prospect_email]
correlation: inputs.prospect_email
steps:
  - name: open
    capability: send_email
    inputs:
      email: inputs.prospect_email
    outputs: [message_id]
  - name: handle_reply
    capability: classify_reply
    inputs:
      email: inputs.prospect_email
      body: events.prospect_replied.body
    outputs: [sentiment, confidence]
flows:
  outreach: [open]
  reply: [handle_reply]
entry: outreach
triggers:
  - event: lead_created
    flow: outreach
    action: start
    idempotency_key: lead_id
    when:
      kind: exists
      field: inputs.prospect_email
  - event: prospect_replied
    flow: reply
    action: resume
    priority: high
    correlation_field: email
    idempotency_key: message_id
"""


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep ambient configuration from leaking into tests."""
    for name in ("CADENCE_DATABASE_URL", "DATABASE_URL", "CADENCE_TRANSPORT", "CADENCE_DEFINITIONS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CADENCE_CONFIG", str(tmp_path / "missing.yaml"))


@pytest.fixture(params=["memory", "sqlite"])
def job_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobStore()
    return SQLiteJobStore(tmp_path / "jobs.db")


@pytest.fixture(params=["memory", "sqlite"])
def state_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkflowStateStore()
    return SQLiteWorkflowStateStore(tmp_path / "state.db")


@pytest.fixture
def registry():
    registry = DefinitionRegistry()
    registry.load(REENGAGEMENT)
    registry.load(REPLY_HANDLER)
    return registry


@pytest.fixture
def fast_config():
    return ProcessorConfig(
        concurrency=2,
        poll_interval=0.01,
        backoff_base=1.0,
        backoff_max=0.01,
        capability_retries=0,
    )


class Outreach:
    """Scripted capabilities that count their invocations."""

    def __init__(self, sentiment: str = "positive", confidence: float = 0.9) -> None:
        self.sentiment = sentiment
        self.confidence = confidence
        self.calls: dict[str, int] = {}

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def resolver(self) -> CapabilityResolver:
        resolver = CapabilityResolver()

        @resolver.capability("classify_reply")
        async def classify_reply(inputs):
            self._count("classify_reply")
            return {"sentiment": self.sentiment, "confidence": self.confidence}

        @resolver.capability("decide_action")
        def decide_action(inputs):
            self._count("decide_action")
            return {"action": "follow_up" if inputs["sentiment"] == "positive" else "nurture"}

        @resolver.capability("send_email")
        async def send_email(inputs):
            self._count("send_email")
            return {"message_id": f"msg-{inputs['email']}"}

        return resolver


@pytest.fixture
def outreach():
    return Outreach()


@pytest.fixture
def definitions_file(tmp_path) -> Path:
    path = tmp_path / "workflows"
    path.mkdir()
    (path / "re-engagement.yaml").write_text(REENGAGEMENT)
    (path / "reply-handler.yaml").write_text(REPLY_HANDLER)
    return path


@pytest.fixture
def outreach_factory():
    return Outreach
