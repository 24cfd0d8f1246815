"""Error taxonomy for the cadence engine."""

from __future__ import annotations

from typing import Optional


class CadenceError(Exception):
    """Base class for all engine errors."""


class ValidationError(CadenceError):
    """A workflow definition failed load-time validation."""

    def __init__(self, definition: str, location: str, message: str) -> None:
        self.definition = definition
        self.location = location
        self.message = message
        super().__init__(f"{definition}: {location}: {message}")


class DefinitionNotFound(CadenceError, KeyError):
    """No definition is registered under the requested name/version."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class JobNotFound(CadenceError, KeyError):
    """The job identifier is unknown to the job store."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class InstanceNotFound(CadenceError, KeyError):
    """The workflow instance identifier is unknown to the state store."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class UnknownCapability(CadenceError, LookupError):
    """No handler is registered for the capability name."""


class StepError(CadenceError):
    """A step could not produce an acceptable output.

    ``reason`` is a stable machine-readable label recorded on the instance.
    """

    reason = "StepError"
    retryable = False

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        self.message = message
        super().__init__(f"{self.reason} in step '{step}': {message}")


class MissingInput(StepError):
    """A declared step input could not be resolved from context."""

    reason = "MissingInput"

    def __init__(self, step: str, input_name: str, reference: str) -> None:
        self.input_name = input_name
        self.reference = reference
        super().__init__(step, f"input '{input_name}' references unresolved '{reference}'")


class CapabilityError(StepError):
    """The external capability failed, timed out or returned malformed output."""

    reason = "CapabilityError"

    def __init__(self, step: str, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(step, message)


class QualityGateFailed(StepError):
    """The capability succeeded but its output did not pass a quality gate."""

    reason = "QualityGateFailed"

    def __init__(self, step: str, field: str, message: str) -> None:
        self.field = field
        super().__init__(step, f"{field}: {message}")


class GuardrailBlocked(CadenceError):
    """A guardrail refused to let a step run."""

    def __init__(self, rule: str, reason: str) -> None:
        self.rule = rule
        self.reason = reason
        super().__init__(f"Guardrail '{rule}' blocked execution: {reason}")


class StateConflict(CadenceError):
    """An optimistic version check on a workflow instance failed."""

    def __init__(
        self, instance_id: str, expected: Optional[int], actual: Optional[int]
    ) -> None:
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Instance {instance_id} version conflict (expected {expected}, found {actual})"
        )


class InstanceClosed(CadenceError):
    """The instance no longer accepts step results (terminal or cancelling)."""

    def __init__(self, instance_id: str, status: str) -> None:
        self.instance_id = instance_id
        self.status = status
        super().__init__(f"Instance {instance_id} is closed ({status})")


class StoreUnavailable(CadenceError):
    """A backing store kept failing and the processor gave up."""


__all__ = [
    "CadenceError",
    "ValidationError",
    "DefinitionNotFound",
    "JobNotFound",
    "InstanceNotFound",
    "UnknownCapability",
    "StepError",
    "MissingInput",
    "CapabilityError",
    "QualityGateFailed",
    "GuardrailBlocked",
    "StateConflict",
    "InstanceClosed",
    "StoreUnavailable",
]
