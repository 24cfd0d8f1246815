"""Reactive trigger dispatcher: routes external events to workflows."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

from .config import ProcessorConfig
from .definitions import MISSING, DefinitionRegistry, resolve_field
from .definitions.models import TriggerBinding, WorkflowDefinition
from .dispatch import WorkflowDispatcher
from .errors import InstanceClosed, StateConflict
from .jobs import JobKind, JobStore
from .persistence import InstanceStatus, WorkflowInstance, WorkflowStateStore
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class DispatchResult(BaseModel):
    """What one matching trigger did with an event."""

    workflow: str
    flow: str
    action: Literal["start", "resume"]
    outcome: Literal["enqueued", "injected", "skipped"]
    job_id: Optional[str] = None
    instance_id: Optional[str] = None
    woke: bool = False
    reason: Optional[str] = None


class DispatcherStats(BaseModel):
    """Counters for events that were routed or dropped."""

    received: int = 0
    unmatched: int = 0
    filtered: int = 0
    missing_correlation: int = 0
    unknown_instance: int = 0
    rejected: int = 0
    started: int = 0
    resumed: int = 0


def _lookup(payload: Dict[str, Any], path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    value = resolve_field(payload, path)
    if value is MISSING or value is None:
        return None
    return str(value)


class TriggerDispatcher:
    """Match events against trigger bindings and start or resume workflows.

    Events for a running instance are appended with an optimistic version
    check. When two dispatches race for one instance the loser reloads the
    instance and re-evaluates the trigger against the winner's event.
    """

    def __init__(
        self,
        registry: DefinitionRegistry,
        job_store: JobStore,
        state_store: WorkflowStateStore,
        config: Optional[ProcessorConfig] = None,
    ) -> None:
        self._registry = registry
        self._job_store = job_store
        self._state_store = state_store
        self._config = config or ProcessorConfig()
        self._workflows = WorkflowDispatcher(job_store, registry, state_store)
        self.stats = DispatcherStats()

    async def dispatch(
        self,
        event_name: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_key: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> list[DispatchResult]:
        payload = dict(payload or {})
        self.stats.received += 1
        matches = self._registry.triggers_for(event_name)
        if not matches:
            self.stats.unmatched += 1
            logger.debug(f"No trigger matches event {event_name}; dropping")
            return []

        results = []
        for definition, trigger in matches:
            if trigger.action == "start":
                result = await self._start(definition, trigger, event_name, payload, event_id)
            else:
                result = await self._resume(
                    definition, trigger, event_name, payload, correlation_key, event_id
                )
            results.append(result)
        return results

    @staticmethod
    def _event_dedupe_key(
        trigger: TriggerBinding, event_name: str, payload: Dict[str, Any], event_id: Optional[str]
    ) -> Optional[str]:
        idem = _lookup(payload, trigger.idempotency_key)
        if idem is not None:
            return f"{event_name}:{idem}"
        return f"{event_name}:{event_id}" if event_id else None

    def _skip(
        self, definition: WorkflowDefinition, trigger: TriggerBinding, reason: str, **extra: Any
    ) -> DispatchResult:
        logger.info(f"Event for {definition.name}/{trigger.flow} skipped: {reason}")
        return DispatchResult(
            workflow=definition.name,
            flow=trigger.flow,
            action=trigger.action,
            outcome="skipped",
            reason=reason,
            **extra,
        )

    async def _start(
        self,
        definition: WorkflowDefinition,
        trigger: TriggerBinding,
        event_name: str,
        payload: Dict[str, Any],
        event_id: Optional[str],
    ) -> DispatchResult:
        scope = {"inputs": payload, "events": {event_name: payload}}
        if trigger.when is not None and not trigger.when.evaluate(scope):
            self.stats.filtered += 1
            return self._skip(definition, trigger, "trigger condition not met")

        dedupe = self._event_dedupe_key(trigger, event_name, payload, event_id)
        try:
            receipt = await self._workflows.submit(
                definition.name,
                payload,
                trigger.priority,
                flow=trigger.flow,
                dedupe_key=f"{definition.name}:{dedupe}" if dedupe else None,
                event={"name": event_name, "payload": payload, "dedupe_key": dedupe},
            )
        except ValueError as exc:
            self.stats.rejected += 1
            return self._skip(definition, trigger, str(exc))
        self.stats.started += 1
        return DispatchResult(
            workflow=definition.name,
            flow=trigger.flow,
            action="start",
            outcome="enqueued",
            job_id=receipt.job_id,
            instance_id=receipt.job_id,
        )

    async def _resume(
        self,
        definition: WorkflowDefinition,
        trigger: TriggerBinding,
        event_name: str,
        payload: Dict[str, Any],
        correlation_key: Optional[str],
        event_id: Optional[str],
    ) -> DispatchResult:
        key = correlation_key or _lookup(payload, trigger.correlation_field)
        if key is None:
            self.stats.missing_correlation += 1
            return self._skip(definition, trigger, "event carries no correlation key")

        instance = await self._state_store.find_by_correlation(definition.name, key)
        if instance is None:
            self.stats.unknown_instance += 1
            return self._skip(definition, trigger, f"no active instance for '{key}'")

        dedupe = self._event_dedupe_key(trigger, event_name, payload, event_id)
        for _ in range(self._config.max_conflict_retries):
            scope = instance.scope()
            scope["events"] = {**scope["events"], event_name: payload}
            if trigger.when is not None and not trigger.when.evaluate(scope):
                self.stats.filtered += 1
                return self._skip(
                    definition, trigger, "trigger condition not met", instance_id=instance.id
                )
            try:
                updated, woke = await self._state_store.append_event(
                    instance.id,
                    event_name,
                    payload,
                    flow=trigger.flow,
                    dedupe_key=dedupe,
                    expected_version=instance.version,
                )
            except StateConflict:
                refreshed = await self._state_store.get_instance(instance.id)
                if refreshed is None:
                    break
                instance = refreshed
                continue
            except InstanceClosed as exc:
                self.stats.unknown_instance += 1
                return self._skip(definition, trigger, str(exc), instance_id=instance.id)
            redelivered = updated.version == instance.version
            return await self._injected(definition, trigger, updated, woke, redelivered)

        self.stats.unknown_instance += 1
        return self._skip(
            definition, trigger, "instance kept changing or disappeared", instance_id=instance.id
        )

    async def _injected(
        self,
        definition: WorkflowDefinition,
        trigger: TriggerBinding,
        instance: WorkflowInstance,
        woke: bool,
        redelivered: bool = False,
    ) -> DispatchResult:
        job_id = None
        requeue = not woke and redelivered and await self._strands(instance)
        if woke or requeue:
            job_id = await self._job_store.enqueue(
                JobKind.RESUME.value,
                {"instance_id": instance.id, "workflow": instance.workflow_name},
                trigger.priority,
                dedupe_key=f"resume:{instance.id}:{instance.version}",
            )
            logger.info(f"Woke instance {instance.id}; queued resume job {job_id}")
        self.stats.resumed += 1
        return DispatchResult(
            workflow=definition.name,
            flow=trigger.flow,
            action="resume",
            outcome="injected",
            job_id=job_id,
            instance_id=instance.id,
            woke=woke,
        )

    async def _strands(self, instance: WorkflowInstance) -> bool:
        """Whether a running instance has lost the job that should drive it.

        The wake and the resume job are two writes; a dispatcher that dies
        between them leaves the instance running with nothing queued. A
        redelivery of the waking event re-queues the job.
        """
        if instance.status != InstanceStatus.RUNNING:
            return False
        if await self._job_store.has_active_job(instance.id):
            return False
        logger.warning(f"Instance {instance.id} is running without a job; re-queueing resume")
        return True

    async def listen(
        self,
        transport: BaseTransport,
        topic: str = "events",
        lifespan: Optional[float] = None,
    ) -> None:
        """Dispatch every event arriving on ``topic`` until ``lifespan`` expires."""
        async for delivery in transport.subscribe(topic, lifespan=lifespan):
            envelope = delivery.envelope
            try:
                await self.dispatch(
                    envelope.name,
                    envelope.payload,
                    envelope.correlation_key,
                    event_id=envelope.event_id,
                )
            except Exception:
                await transport.nack(delivery)
                raise
            await transport.ack(delivery)
