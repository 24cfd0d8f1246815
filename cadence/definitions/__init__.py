"""Workflow definition models, predicates and the definition registry."""

from __future__ import annotations

from .models import (
    Branch,
    BranchTarget,
    GuardrailRule,
    InputBinding,
    QualityGate,
    StepDefinition,
    TriggerBinding,
    WorkflowDefinition,
)
from .predicates import MISSING, Predicate, resolve_field
from .registry import DefinitionRegistry
from .validation import validate_definition

__all__ = [
    "Branch",
    "BranchTarget",
    "DefinitionRegistry",
    "GuardrailRule",
    "InputBinding",
    "MISSING",
    "Predicate",
    "QualityGate",
    "StepDefinition",
    "TriggerBinding",
    "WorkflowDefinition",
    "resolve_field",
    "validate_definition",
]
