"""Job processor: the worker pool that drives workflow instances."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .capabilities import CapabilityInvoker
from .config import ProcessorConfig
from .decision import DecisionEngine, FlowRef, StepRef, Suspend, Terminal
from .definitions import MISSING, DefinitionRegistry, resolve_field
from .definitions.models import StepDefinition, WorkflowDefinition
from .errors import (
    CadenceError,
    GuardrailBlocked,
    InstanceClosed,
    InstanceNotFound,
    StateConflict,
    StepError,
    StoreUnavailable,
)
from .execute import StepExecutor
from .guardrails import AutoStop, Block, Escalate, GuardrailEnforcer
from .jobs import Job, JobKind, JobStore
from .persistence import InstanceStatus, WorkflowInstance, WorkflowStateStore
from .utils.clock import utcnow
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class ProcessorHealth(BaseModel):
    """Snapshot reported by ``JobProcessor.health``."""

    healthy: bool
    worker_id: str
    concurrency: int
    active_jobs: int = 0
    processed: int = 0
    failed: int = 0
    consecutive_store_failures: int = 0
    last_error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)


class JobProcessor:
    """Claims jobs and drives their workflow instances.

    Each claimed job is driven step by step: guardrails, step executor,
    post-step guardrails, then the decision engine picks what comes next.
    The loop ends when the instance is terminal or suspended. All state lives
    in the stores, so a reclaimed job resumes from the last recorded step.
    """

    def __init__(
        self,
        job_store: JobStore,
        state_store: WorkflowStateStore,
        registry: DefinitionRegistry,
        capabilities: CapabilityInvoker,
        config: Optional[ProcessorConfig] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self._job_store = job_store
        self._state_store = state_store
        self._registry = registry
        self._config = config or ProcessorConfig()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.executor = StepExecutor(state_store, capabilities, self._config)
        self.decisions = DecisionEngine()
        self.guardrails = GuardrailEnforcer(job_store, registry)
        self._health = ProcessorHealth(
            healthy=True, worker_id=self.worker_id, concurrency=self._config.concurrency
        )
        self._stopping = asyncio.Event()

    # ------------------------------------------------------------------
    # Loop
    def health(self) -> ProcessorHealth:
        return self._health.model_copy()

    def stop(self) -> None:
        """Ask workers to exit after their current job."""
        self._stopping.set()

    async def _store_failed(self, action: str, exc: Exception) -> None:
        """Count a store error and back off; raise once the limit is reached."""
        self._health.consecutive_store_failures += 1
        self._health.last_error = f"{type(exc).__name__}: {exc}"
        failures = self._health.consecutive_store_failures
        if failures >= self._config.max_store_failures:
            self._health.healthy = False
            logger.error(f"Store unavailable after {failures} attempts; stopping")
            raise StoreUnavailable(f"Store failed {failures} times in a row") from exc
        logger.warning(f"{action} failed ({failures}/{self._config.max_store_failures}): {exc}")
        await schedule_retry(
            failures, base=self._config.backoff_base, max_delay=self._config.backoff_max
        )

    async def _claim(self, worker_id: str) -> Optional[Job]:
        try:
            job = await self._job_store.claim(worker_id, self._config.visibility_timeout)
        except Exception as exc:
            await self._store_failed("Claim", exc)
            return None
        self._health.consecutive_store_failures = 0
        return job

    async def run_once(self, worker_id: Optional[str] = None) -> Optional[Job]:
        """Claim and process at most one job."""
        worker_id = worker_id or self.worker_id
        job = await self._claim(worker_id)
        if job is not None:
            await self.process(job, worker_id)
        return job

    async def _worker(self, worker_id: str, deadline: Optional[float]) -> None:
        loop = asyncio.get_running_loop()
        while not self._stopping.is_set() and (deadline is None or loop.time() < deadline):
            job = await self.run_once(worker_id)
            if job is None:
                await asyncio.sleep(self._config.poll_interval)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run ``concurrency`` workers until stopped or ``lifespan`` expires.

        ``StoreUnavailable`` from any worker stops the pool and propagates.
        """
        self._stopping.clear()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        workers = [
            asyncio.create_task(self._worker(f"{self.worker_id}-{i}", deadline))
            for i in range(self._config.concurrency)
        ]
        logger.info(f"Processor {self.worker_id} started {len(workers)} workers")
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info(f"Processor {self.worker_id} stopped")

    # ------------------------------------------------------------------
    # Jobs
    async def process(self, job: Job, worker_id: Optional[str] = None) -> None:
        worker_id = worker_id or self.worker_id
        self._health.active_jobs += 1
        logger.info(f"Worker {worker_id} processing {job.kind} job {job.id} (attempt {job.attempt})")
        try:
            instance = await self._drive_job(job)
        except StoreUnavailable:
            logger.error(f"Leaving job {job.id} for reclaim after repeated store errors")
            raise
        except (CadenceError, ValueError, LookupError) as exc:
            logger.exception(f"Job {job.id} failed")
            self._health.failed += 1
            reason = f"{type(exc).__name__}: {exc}"
            await self._job_store.fail(job.id, reason, worker_id)
            instance_id = job.payload.get("instance_id") or job.id
            if await self._state_store.get_instance(instance_id) is not None:
                await self._state_store.mark_terminal(instance_id, InstanceStatus.FAILED, reason)
            return
        finally:
            self._health.active_jobs -= 1

        self._health.processed += 1
        if instance.status == InstanceStatus.FAILED:
            finished = await self._job_store.fail(
                job.id, instance.failure_reason or "workflow failed", worker_id
            )
        else:
            finished = await self._job_store.complete(job.id, self._summary(instance), worker_id)
        if not finished:
            logger.warning(f"Job {job.id} was reclaimed by another worker; result not stored")

    async def _drive_job(self, job: Job) -> WorkflowInstance:
        """Start and drive the job's instance, retrying store errors.

        Workflow errors (``CadenceError`` and bad payloads) propagate and fail
        the job. Anything else is treated as a store outage: all progress is
        already persisted, so the job is simply driven again after a backoff.
        """
        while True:
            try:
                instance = await self._start(job)
                instance = await self.drive(instance, job)
            except (CadenceError, ValueError, LookupError):
                raise
            except Exception as exc:
                await self._store_failed(f"Job {job.id}", exc)
                continue
            self._health.consecutive_store_failures = 0
            return instance

    @staticmethod
    def _summary(instance: WorkflowInstance) -> dict[str, Any]:
        return {
            "instance_id": instance.id,
            "status": instance.status.value,
            "current_flow": instance.current_flow,
            "current_step": instance.current_step,
            "completed_steps": list(instance.context),
            "failure_reason": instance.failure_reason,
        }

    async def _start(self, job: Job) -> WorkflowInstance:
        """Resolve a job to the instance it drives, creating it if needed."""
        if job.kind == JobKind.WORKFLOW.value:
            definition = self._registry.get(job.payload["workflow"], job.payload.get("version"))
            inputs = job.payload.get("inputs", {})
            correlation = None
            if definition.correlation:
                value = resolve_field({"inputs": inputs}, definition.correlation)
                correlation = None if value is MISSING or value is None else str(value)
            instance_id = await self._state_store.create_instance(
                definition.name,
                inputs,
                instance_id=job.id,
                flow=job.payload.get("flow") or definition.entry,
                workflow_version=definition.version,
                correlation_key=correlation,
            )
        elif job.kind == JobKind.RESUME.value:
            instance_id = job.payload["instance_id"]
        else:
            raise ValueError(f"Unsupported job kind: {job.kind}")

        instance = await self._state_store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(f"Workflow instance {instance_id} not found")

        event = job.payload.get("event") if job.kind == JobKind.WORKFLOW.value else None
        if event and instance.status == InstanceStatus.RUNNING and not instance.events:
            instance, _ = await self._state_store.append_event(
                instance.id,
                event["name"],
                event.get("payload", {}),
                dedupe_key=f"start:{job.id}",
            )
        return instance

    # ------------------------------------------------------------------
    # Instances
    async def drive(self, instance: WorkflowInstance, job: Optional[Job] = None) -> WorkflowInstance:
        """Advance ``instance`` until it is terminal or suspended."""
        definition = self._registry.get(instance.workflow_name, instance.workflow_version)
        recheck = True
        while True:
            current = await self._state_store.get_instance(instance.id)
            if current is None:
                raise InstanceNotFound(f"Workflow instance {instance.id} not found")
            instance = current
            if instance.is_terminal or instance.status == InstanceStatus.SUSPENDED:
                return instance
            if instance.cancel_requested:
                await self._state_store.mark_terminal(
                    instance.id, InstanceStatus.CANCELLED, "cancelled"
                )
                logger.info(f"Instance {instance.id} cancelled at step boundary")
                continue

            try:
                if recheck:
                    recheck = False
                    if await self._recheck_last_step(instance, definition):
                        continue

                decision = self.decisions.next_step(instance, definition, instance.current_step)
                if isinstance(decision, StepRef):
                    await self._run_step(instance, definition, definition.step(decision.name))
                    if job is not None:
                        await self._report_progress(job, instance, definition)
                elif isinstance(decision, FlowRef):
                    await self._state_store.enter_flow(
                        instance.id,
                        decision.name,
                        expected_version=instance.version,
                        consume_pending=decision.pending,
                    )
                    logger.info(f"Instance {instance.id} entered flow {decision.name}")
                elif isinstance(decision, Suspend):
                    await self._state_store.suspend(instance.id, expected_version=instance.version)
                    logger.info(f"Instance {instance.id} suspended: {decision.reason}")
                elif isinstance(decision, Terminal):
                    await self._state_store.mark_terminal(
                        instance.id, decision.status, decision.reason
                    )
                    logger.info(f"Instance {instance.id} finished as {decision.status.value}")
            except (StateConflict, InstanceClosed) as exc:
                logger.debug(f"Instance {instance.id} changed underneath; reloading ({exc})")

    async def _run_step(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, step: StepDefinition
    ) -> None:
        if not instance.has_step(step.name):
            verdict = await self.guardrails.check_pre_step(instance, step)
            if isinstance(verdict, Block):
                if verdict.stop:
                    await self._state_store.mark_terminal(
                        instance.id,
                        InstanceStatus.STOPPED,
                        f"AutoStop: guardrail '{verdict.rule}': {verdict.reason}",
                        failed_step=step.name,
                    )
                else:
                    blocked = GuardrailBlocked(verdict.rule, verdict.reason)
                    await self._state_store.mark_terminal(
                        instance.id,
                        InstanceStatus.FAILED,
                        f"GuardrailBlocked: {blocked}",
                        failed_step=step.name,
                    )
                return

        try:
            result = await self.executor.execute_step(instance, step)
        except StepError as exc:
            logger.warning(f"Step {step.name} of instance {instance.id} failed: {exc}")
            await self.guardrails.release(instance, step)
            await self._state_store.mark_terminal(
                instance.id,
                InstanceStatus.FAILED,
                f"{exc.reason}: {exc.message}",
                failed_step=step.name,
            )
            return

        await self._after_step(result.instance, step, result.output)

    async def _recheck_last_step(
        self, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> bool:
        """Re-apply post-step guardrails to the last recorded step.

        A worker can die between recording a step and acting on its post-step
        verdict. Post-step rules only read recorded state, so evaluating them
        again on the first load of a job is safe.
        """
        name = instance.current_step
        if name is None or not instance.has_step(name):
            return False
        if not definition.guardrails_for(name, "post"):
            return False
        step = definition.step(name)
        return await self._after_step(instance, step, instance.context[name])

    async def _after_step(
        self, instance: WorkflowInstance, step: StepDefinition, output: Any
    ) -> bool:
        """Act on the post-step verdict; return True if the instance stopped or paused."""
        verdict = await self.guardrails.check_post_step(instance, step, output)
        if isinstance(verdict, AutoStop):
            await self._state_store.mark_terminal(
                instance.id,
                InstanceStatus.STOPPED,
                f"AutoStop: guardrail '{verdict.rule}': {verdict.reason}",
                failed_step=step.name,
            )
            return True
        if isinstance(verdict, Escalate):
            if any(f.kind == "escalation" and f.step_name == step.name for f in instance.failures):
                # already reviewed; the instance was resumed on purpose
                return False
            await self._state_store.record_escalation(
                instance.id, step.name, f"guardrail '{verdict.rule}': {verdict.reason}"
            )
            await self._state_store.suspend(instance.id, expected_version=instance.version)
            logger.info(f"Instance {instance.id} suspended for review after step {step.name}")
            return True
        return False

    async def _report_progress(
        self, job: Job, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> None:
        done = len(instance.steps) + 1
        progress = min(99.0, 100.0 * done / len(definition.steps))
        await self._job_store.update_progress(job.id, progress)
