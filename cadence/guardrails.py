"""Guardrail enforcement around step execution."""

from __future__ import annotations

import logging
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from .definitions import MISSING, DefinitionRegistry, resolve_field
from .definitions.models import GuardrailRule, StepDefinition, WorkflowDefinition
from .jobs.store import JobStore
from .persistence.models import WorkflowInstance

logger = logging.getLogger(__name__)


class _Verdict(BaseModel):
    model_config = ConfigDict(frozen=True)


class Allow(_Verdict):
    kind: Literal["allow"] = "allow"


class Block(_Verdict):
    """The step must not run. ``stop`` turns the block into an auto-stop."""

    kind: Literal["block"] = "block"
    rule: str
    reason: str
    stop: bool = False


class Continue(_Verdict):
    kind: Literal["continue"] = "continue"


class Escalate(_Verdict):
    kind: Literal["escalate"] = "escalate"
    rule: str
    reason: str


class AutoStop(_Verdict):
    kind: Literal["auto_stop"] = "auto_stop"
    rule: str
    reason: str


PreStepVerdict = Union[Allow, Block]
PostStepVerdict = Union[Continue, Escalate, AutoStop]


class GuardrailEnforcer:
    """Evaluate a definition's guardrail rules for one step.

    Rate limits are rolling-window counters held in the job store. A
    reservation is keyed by the rule and the resolved key value, and owned by
    the token ``<instance>:<step>`` so that re-running a step after a crash
    reuses its original reservation.
    """

    def __init__(self, job_store: JobStore, registry: DefinitionRegistry) -> None:
        self._job_store = job_store
        self._registry = registry

    def _definition(self, instance: WorkflowInstance) -> WorkflowDefinition:
        return self._registry.get(instance.workflow_name, instance.workflow_version)

    @staticmethod
    def _token(instance: WorkflowInstance, step: StepDefinition) -> str:
        return f"{instance.id}:{step.name}"

    @staticmethod
    def _rate_key(rule: GuardrailRule, scope: dict[str, Any]) -> Optional[str]:
        value = resolve_field(scope, rule.key)
        if value is MISSING or value is None:
            return None
        return f"{rule.name}:{value}"

    async def check_pre_step(
        self, instance: WorkflowInstance, step: StepDefinition
    ) -> PreStepVerdict:
        rules = self._definition(instance).guardrails_for(step.name, "pre")
        scope = instance.scope()

        for rule in rules:
            if rule.kind == "predicate" and rule.when.evaluate(scope):
                logger.info(
                    f"Guardrail {rule.name} matched before step {step.name} of instance {instance.id}"
                )
                return Block(
                    rule=rule.name,
                    reason=f"condition matched before step '{step.name}'",
                    stop=rule.action == "auto_stop",
                )

        token = self._token(instance, step)
        reserved: list[str] = []
        for rule in rules:
            if rule.kind != "rate_limit":
                continue
            key = self._rate_key(rule, scope)
            if key is None:
                verdict = Block(rule=rule.name, reason=f"rate limit key '{rule.key}' did not resolve")
            elif await self._job_store.reserve_slot(key, token, rule.limit, rule.window_seconds):
                reserved.append(key)
                continue
            else:
                verdict = Block(
                    rule=rule.name,
                    reason=f"limit of {rule.limit} per {rule.window_seconds}s reached for '{key}'",
                )
            for held in reserved:
                await self._job_store.release_slot(held, token)
            logger.info(f"Guardrail {rule.name} blocked step {step.name} of instance {instance.id}")
            return verdict
        return Allow()

    async def check_post_step(
        self, instance: WorkflowInstance, step: StepDefinition, output: Any
    ) -> PostStepVerdict:
        scope = instance.scope()
        scope[step.name] = output
        escalation: Optional[Escalate] = None
        for rule in self._definition(instance).guardrails_for(step.name, "post"):
            if not rule.when.evaluate(scope):
                continue
            reason = f"condition matched after step '{step.name}'"
            if rule.action == "auto_stop":
                logger.warning(f"Guardrail {rule.name} auto-stopped instance {instance.id}")
                return AutoStop(rule=rule.name, reason=reason)
            if escalation is None:
                escalation = Escalate(rule=rule.name, reason=reason)
        if escalation is not None:
            logger.info(f"Guardrail {escalation.rule} escalated instance {instance.id}")
            return escalation
        return Continue()

    async def release(self, instance: WorkflowInstance, step: StepDefinition) -> None:
        """Give back the rate-limit reservations held by a failed step."""
        scope = instance.scope()
        token = self._token(instance, step)
        for rule in self._definition(instance).guardrails_for(step.name, "pre"):
            if rule.kind != "rate_limit":
                continue
            key = self._rate_key(rule, scope)
            if key is not None:
                await self._job_store.release_slot(key, token)
