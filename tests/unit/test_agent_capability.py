"""pydantic-ai agents exposed as step capabilities."""

import pytest
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.models.test import TestModel

from cadence.agent.wrapper import AgentCapability, register_agent
from cadence.capabilities import CapabilityResolver
from cadence.execute import StepExecutor


class ReplyClassification(BaseModel):
    sentiment: str
    confidence: float


def _classifier() -> Agent:
    model = TestModel(custom_output_args={"sentiment": "positive", "confidence": 0.91})
    return Agent(model, output_type=ReplyClassification, name="classifier")


@pytest.mark.asyncio
async def test_structured_output_becomes_mapping():
    capability = AgentCapability(_classifier(), "Classify the reply from {email}")
    assert capability.render({"email": "a@b.com"}) == "Classify the reply from a@b.com"

    output = await capability({"email": "a@b.com"})
    assert output == {"sentiment": "positive", "confidence": 0.91}


@pytest.mark.asyncio
async def test_text_output_is_wrapped():
    agent = Agent(TestModel(custom_output_text="Thanks for getting back to us!"))
    capability = AgentCapability(agent, "Draft a reply to {email}", output_key="draft")

    assert await capability({"email": "a@b.com"}) == {"draft": "Thanks for getting back to us!"}


@pytest.mark.asyncio
async def test_registered_agent_drives_a_step(state_store, registry):
    resolver = CapabilityResolver()
    register_agent(resolver, "classify_reply", _classifier(), "Classify the reply from {email}")
    assert "classify_reply" in resolver

    defn = registry.get("re-engagement")
    instance_id = await state_store.create_instance(defn.name, {"prospect_email": "a@b.com"})
    instance = await state_store.get_instance(instance_id)

    result = await StepExecutor(state_store, resolver).execute_step(instance, defn.step("classify"))
    assert result.output["sentiment"] == "positive"
    assert result.instance.current_step == "classify"
