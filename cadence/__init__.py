"""Cadence: durable workflow orchestration for sales outreach."""

from .agent.wrapper import AgentCapability
from .capabilities import CapabilityResolver
from .decision import DecisionEngine
from .definitions import DefinitionRegistry, WorkflowDefinition
from .dispatch import WorkflowDispatcher
from .execute import StepExecutor
from .guardrails import GuardrailEnforcer
from .jobs import get_job_store
from .persistence import get_state_store
from .processor import JobProcessor
from .transports import get_transport
from .triggers import TriggerDispatcher

__version__ = "0.1.0"
__all__ = [
    "AgentCapability",
    "CapabilityResolver",
    "DecisionEngine",
    "DefinitionRegistry",
    "GuardrailEnforcer",
    "JobProcessor",
    "StepExecutor",
    "TriggerDispatcher",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "get_job_store",
    "get_state_store",
    "get_transport",
]
