"""Pure next-step selection over an instance's accumulated context."""

from __future__ import annotations

import logging
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from .definitions.models import BranchTarget, WorkflowDefinition
from .persistence.models import InstanceStatus, WorkflowInstance

logger = logging.getLogger(__name__)


class _Decision(BaseModel):
    model_config = ConfigDict(frozen=True)


class StepRef(_Decision):
    kind: Literal["step"] = "step"
    name: str


class FlowRef(_Decision):
    """Enter ``name`` from its first step.

    ``pending`` marks a flow requested by an injected event; entering it
    consumes the head of the instance's pending queue.
    """

    kind: Literal["flow"] = "flow"
    name: str
    pending: bool = False


class Terminal(_Decision):
    kind: Literal["terminal"] = "terminal"
    status: InstanceStatus = InstanceStatus.COMPLETED
    reason: Optional[str] = None


class Suspend(_Decision):
    kind: Literal["suspend"] = "suspend"
    reason: Optional[str] = None


Decision = Union[StepRef, FlowRef, Terminal, Suspend]


class DecisionEngine:
    """Select what an instance does after ``current_step``.

    The result depends only on the arguments: no I/O and no clock, so the
    same instance and definition always yield the same decision.
    """

    def next_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        current_step: Optional[str] = None,
    ) -> Decision:
        if instance.is_terminal:
            return Terminal(status=instance.status, reason=instance.failure_reason)
        if instance.pending_flows:
            return FlowRef(name=instance.pending_flows[0], pending=True)
        if current_step is None:
            return StepRef(name=definition.first_step(instance.current_flow))

        step = definition.step(current_step)
        if step.branches or step.default is not None:
            scope = instance.scope()
            target = step.default
            for branch in step.branches:
                if branch.when.evaluate(scope):
                    target = branch.goto
                    break
            return self._resolve(target)

        following = definition.step_after(current_step)
        if following is not None:
            return StepRef(name=following)
        if definition.mode == "reactive":
            return Suspend(reason=f"end of flow '{instance.current_flow}'")
        return Terminal()

    @staticmethod
    def _resolve(target: BranchTarget) -> Decision:
        if target.step is not None:
            return StepRef(name=target.step)
        if target.flow is not None:
            return FlowRef(name=target.flow)
        if target.suspend:
            return Suspend(reason="branch requested suspension")
        return Terminal()
