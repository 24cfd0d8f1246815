"""Step execution engine for cadence workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from .capabilities import CapabilityInvoker
from .config import ProcessorConfig
from .definitions import MISSING, resolve_field
from .definitions.models import StepDefinition
from .errors import (
    CapabilityError,
    InstanceNotFound,
    MissingInput,
    QualityGateFailed,
    StateConflict,
    UnknownCapability,
)
from .persistence import WorkflowInstance, WorkflowStateStore
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class StepResult(BaseModel):
    """Outcome of one step, after its output is durably recorded."""

    step: str
    output: Any
    attempts: int = 0
    replayed: bool = False
    instance: WorkflowInstance


class StepExecutor:
    """Runs a single step against its bound capability.

    Steps are at-least-once at the engine level: a step whose output is
    already recorded is replayed from the store instead of invoking the
    capability again.
    """

    def __init__(
        self,
        state_store: WorkflowStateStore,
        capabilities: CapabilityInvoker,
        config: Optional[ProcessorConfig] = None,
    ) -> None:
        self._state_store = state_store
        self._capabilities = capabilities
        self._config = config or ProcessorConfig()

    def resolve_inputs(self, instance: WorkflowInstance, step: StepDefinition) -> dict[str, Any]:
        """Bind declared inputs from the instance scope; never passes ``None`` silently."""
        scope = instance.scope()
        bound: dict[str, Any] = {}
        for name, binding in step.inputs.items():
            if binding.ref is None:
                bound[name] = binding.value
                continue
            value = resolve_field(scope, binding.ref)
            if value is MISSING or value is None:
                raise MissingInput(step.name, name, binding.ref)
            bound[name] = value
        return bound

    async def execute_step(self, instance: WorkflowInstance, step: StepDefinition) -> StepResult:
        if instance.has_step(step.name):
            output = instance.context[step.name]
            updated = await self._record(instance, step.name, output)
            logger.info(f"Step {step.name} of instance {instance.id} already recorded; replaying")
            return StepResult(step=step.name, output=output, replayed=True, instance=updated)

        inputs = self.resolve_inputs(instance, step)
        output, attempts = await self._invoke(step, inputs)
        for gate in step.quality_gates:
            problem = gate.violation(output)
            if problem is not None:
                raise QualityGateFailed(step.name, gate.field, problem)

        updated = await self._record(instance, step.name, output)
        logger.info(
            f"Step {step.name} of instance {instance.id} completed after {attempts} attempt(s)"
        )
        return StepResult(
            step=step.name,
            output=updated.context[step.name],
            attempts=attempts,
            instance=updated,
        )

    async def _invoke(self, step: StepDefinition, inputs: dict[str, Any]) -> tuple[dict[str, Any], int]:
        retries = step.retries if step.retries is not None else self._config.capability_retries
        timeout = step.timeout or self._config.step_timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                raw = await self._capabilities.invoke(step.capability, inputs, timeout)
                return self._validate_output(step, raw), attempt
            except UnknownCapability as exc:
                raise CapabilityError(step.name, str(exc), retryable=False) from exc
            except asyncio.TimeoutError:
                error = CapabilityError(step.name, f"timed out after {timeout}s")
            except CapabilityError as exc:
                error = exc
            except Exception as exc:
                error = CapabilityError(step.name, f"{type(exc).__name__}: {exc}")
                error.__cause__ = exc

            if not error.retryable or attempt > retries:
                raise error
            logger.warning(
                f"Capability {step.capability} failed for step {step.name} "
                f"(attempt {attempt}/{retries + 1}): {error.message}"
            )
            await schedule_retry(
                attempt, base=self._config.backoff_base, max_delay=self._config.backoff_max
            )

    @staticmethod
    def _validate_output(step: StepDefinition, raw: Any) -> dict[str, Any]:
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        if not isinstance(raw, Mapping):
            raise CapabilityError(
                step.name, f"expected a mapping output, got {type(raw).__name__}"
            )
        missing = [name for name in step.outputs if name not in raw]
        if missing:
            raise CapabilityError(step.name, f"output is missing declared fields {missing}")
        return dict(raw)

    async def _record(
        self, instance: WorkflowInstance, step_name: str, output: Any
    ) -> WorkflowInstance:
        """Record ``output``, refreshing the expected version on conflicts."""
        expected = instance.version
        for _ in range(self._config.max_conflict_retries):
            try:
                return await self._state_store.record_step_result(
                    instance.id, step_name, output, expected_version=expected
                )
            except StateConflict as exc:
                logger.debug(f"Retrying record of step {step_name}: {exc}")
                current = await self._state_store.get_instance(instance.id)
                if current is None:
                    raise InstanceNotFound(f"Workflow instance {instance.id} not found") from exc
                expected = current.version
        raise StateConflict(instance.id, expected, None)
