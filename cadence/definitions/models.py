"""Pydantic models describing workflow definitions."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..jobs.models import JobPriority
from .predicates import MISSING, Predicate, resolve_field

RESERVED_STEP_NAMES = frozenset({"inputs", "events"})
STEP_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_\-]*$"
MAX_RATE_WINDOW_SECONDS = 366 * 24 * 3600


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class InputBinding(_Frozen):
    """Binds a step input to a field reference or a literal value.

    A bare string in YAML is shorthand for ``{ref: "<path>"}``.
    """

    ref: Optional[str] = None
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"ref": data}
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> "InputBinding":
        if (self.ref is not None) == ("value" in self.model_fields_set):
            raise ValueError("an input binding needs exactly one of 'ref' or 'value'")
        return self


class QualityGate(_Frozen):
    """Threshold applied to a field of a step's output."""

    field: str
    min: Optional[float] = None
    max: Optional[float] = None
    allowed: Optional[list[Any]] = None

    @model_validator(mode="after")
    def _has_constraint(self) -> "QualityGate":
        if self.min is None and self.max is None and self.allowed is None:
            raise ValueError(f"quality gate on '{self.field}' declares no constraint")
        return self

    def violation(self, output: dict[str, Any]) -> Optional[str]:
        """Describe why ``output`` fails this gate, or ``None`` if it passes."""
        value = resolve_field(output, self.field)
        if value is MISSING or value is None:
            return "value is missing"
        if self.allowed is not None and value not in self.allowed:
            return f"{value!r} is not one of {self.allowed!r}"
        if self.min is not None or self.max is not None:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return f"{value!r} is not numeric"
            if self.min is not None and value < self.min:
                return f"{value} is below the minimum {self.min}"
            if self.max is not None and value > self.max:
                return f"{value} is above the maximum {self.max}"
        return None


class BranchTarget(_Frozen):
    """Where control goes next: a later step, another flow, the end, or a wait."""

    step: Optional[str] = None
    flow: Optional[str] = None
    end: bool = False
    suspend: bool = False

    @model_validator(mode="before")
    @classmethod
    def _coerce_shorthand(cls, data: Any) -> Any:
        if data == "end":
            return {"end": True}
        if data == "suspend":
            return {"suspend": True}
        if isinstance(data, str):
            raise ValueError("a string target must be 'end' or 'suspend'")
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> "BranchTarget":
        chosen = [self.step is not None, self.flow is not None, self.end, self.suspend]
        if sum(chosen) != 1:
            raise ValueError("a branch target needs exactly one of 'step', 'flow', 'end' or 'suspend'")
        return self


class Branch(_Frozen):
    when: Predicate
    goto: BranchTarget


class StepDefinition(_Frozen):
    """Defines one step in a workflow."""

    name: str = Field(pattern=STEP_NAME_PATTERN)
    capability: str
    description: Optional[str] = None
    inputs: dict[str, InputBinding] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)
    quality_gates: list[QualityGate] = Field(default_factory=list)
    branches: list[Branch] = Field(default_factory=list)
    default: Optional[BranchTarget] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    retries: Optional[int] = Field(default=None, ge=0, le=10)


class TriggerBinding(_Frozen):
    """Maps an external event to a flow that is started or resumed."""

    event: str
    flow: str
    action: Literal["start", "resume"] = "start"
    priority: JobPriority = JobPriority.NORMAL
    correlation_field: Optional[str] = None
    idempotency_key: Optional[str] = None
    when: Optional[Predicate] = None


class GuardrailRule(_Frozen):
    """Safety rule enforced around step execution."""

    name: str
    kind: Literal["rate_limit", "predicate"]
    stage: Literal["pre", "post"] = "pre"
    steps: list[str] = Field(default_factory=list)
    action: Literal["block", "escalate", "auto_stop"] = "block"
    when: Optional[Predicate] = None
    key: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    window_seconds: Optional[int] = Field(default=None, ge=1, le=MAX_RATE_WINDOW_SECONDS)

    @model_validator(mode="after")
    def _check_shape(self) -> "GuardrailRule":
        if self.kind == "rate_limit":
            if self.key is None or self.limit is None or self.window_seconds is None:
                raise ValueError("rate_limit rules need 'key', 'limit' and 'window_seconds'")
            if self.stage != "pre" or self.action != "block":
                raise ValueError("rate_limit rules run before a step and can only block")
        else:
            if self.when is None:
                raise ValueError("predicate rules need a 'when' predicate")
            allowed = {"pre": ("block", "auto_stop"), "post": ("escalate", "auto_stop")}
            if self.action not in allowed[self.stage]:
                raise ValueError(
                    f"{self.stage}-step rules support actions {list(allowed[self.stage])}"
                )
        return self

    def applies_to(self, step_name: str) -> bool:
        return not self.steps or step_name in self.steps

    def field_paths(self) -> list[str]:
        paths = list(self.when.field_paths()) if self.when else []
        if self.key:
            paths.append(self.key)
        return paths


class WorkflowDefinition(_Frozen):
    """Declarative, versioned description of one workflow type."""

    name: str
    version: int = Field(default=1, ge=1)
    description: Optional[str] = None
    mode: Literal["sequential", "reactive"] = "sequential"
    inputs: list[str] = Field(default_factory=list)
    correlation: Optional[str] = None
    steps: list[StepDefinition] = Field(min_length=1)
    flows: dict[str, list[str]] = Field(default_factory=dict)
    entry: str = "main"
    triggers: list[TriggerBinding] = Field(default_factory=list)
    guardrails: list[GuardrailRule] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _default_flow(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("flows") and isinstance(data.get("steps"), list):
            names = [
                s.get("name") if isinstance(s, dict) else getattr(s, "name", None)
                for s in data["steps"]
            ]
            data = {**data, "flows": {"main": names}}
        return data

    def step(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def has_step(self, name: str) -> bool:
        return any(s.name == name for s in self.steps)

    def flow_of(self, step_name: str) -> Optional[str]:
        for flow, members in self.flows.items():
            if step_name in members:
                return flow
        return None

    def first_step(self, flow: str) -> str:
        return self.flows[flow][0]

    def step_after(self, step_name: str) -> Optional[str]:
        """The step following ``step_name`` in its flow, if any."""
        flow = self.flow_of(step_name)
        if flow is None:
            return None
        members = self.flows[flow]
        index = members.index(step_name)
        return members[index + 1] if index + 1 < len(members) else None

    def guardrails_for(self, step_name: str, stage: str) -> list[GuardrailRule]:
        return [g for g in self.guardrails if g.stage == stage and g.applies_to(step_name)]


__all__ = [
    "RESERVED_STEP_NAMES",
    "InputBinding",
    "QualityGate",
    "BranchTarget",
    "Branch",
    "StepDefinition",
    "TriggerBinding",
    "GuardrailRule",
    "WorkflowDefinition",
]
