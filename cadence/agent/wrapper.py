from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel
from pydantic_ai import Agent

from ..capabilities import CapabilityResolver

logger = logging.getLogger(__name__)


class AgentCapability:
    """Expose a ``pydantic_ai.Agent`` as a capability handler.

    The step's bound inputs are rendered into ``prompt`` with ``str.format``.
    Structured agent outputs are returned as dictionaries; plain outputs are
    wrapped as ``{output_key: value}`` so that steps can declare them.
    """

    def __init__(
        self,
        agent: Agent,
        prompt: str,
        *,
        output_key: str = "output",
        deps: Any = None,
    ) -> None:
        self.agent = agent
        self.prompt = prompt
        self.output_key = output_key
        self.deps = deps

    def render(self, inputs: dict[str, Any]) -> str:
        return self.prompt.format(**inputs)

    async def __call__(self, inputs: dict[str, Any]) -> dict[str, Any]:
        prompt = self.render(inputs)
        logger.debug(f"Running agent {getattr(self.agent, 'name', None)} with prompt: {prompt}")
        result = await self.agent.run(prompt, deps=self.deps)
        output = result.output
        if isinstance(output, BaseModel):
            return output.model_dump()
        if isinstance(output, dict):
            return output
        return {self.output_key: output}


def register_agent(
    resolver: CapabilityResolver,
    name: str,
    agent: Agent,
    prompt: str,
    *,
    output_key: str = "output",
    deps: Optional[Any] = None,
) -> AgentCapability:
    """Wrap ``agent`` and register it on ``resolver`` under ``name``."""
    capability = AgentCapability(agent, prompt, output_key=output_key, deps=deps)
    resolver.register(name, capability)
    return capability
