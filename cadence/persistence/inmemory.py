"""In-memory implementation of the workflow state store."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional

from ..errors import InstanceClosed, InstanceNotFound, StateConflict
from ..retention import RetentionPolicy, StatsWindow
from ..utils.clock import utcnow
from .models import (
    TERMINAL_INSTANCE_STATUSES,
    EventRecord,
    FailureRecord,
    InstanceStatus,
    StepRecord,
    WorkflowInstance,
    WorkflowStats,
)
from .repository import WorkflowStateStore


class InMemoryWorkflowStateStore(WorkflowStateStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _get(self, instance_id: str) -> WorkflowInstance:
        inst = self._instances.get(instance_id)
        if inst is None:
            raise InstanceNotFound(f"Workflow instance {instance_id} not found")
        return inst

    @staticmethod
    def _check_version(inst: WorkflowInstance, expected_version: Optional[int]) -> None:
        if expected_version is not None and inst.version != expected_version:
            raise StateConflict(inst.id, expected_version, inst.version)

    @staticmethod
    def _touch(inst: WorkflowInstance) -> None:
        inst.version += 1
        inst.updated_at = utcnow()

    # ------------------------------------------------------------------
    async def create_instance(
        self,
        workflow_name: str,
        inputs: dict[str, Any],
        *,
        instance_id: Optional[str] = None,
        flow: str = "main",
        workflow_version: int = 1,
        correlation_key: Optional[str] = None,
    ) -> str:
        instance_id = instance_id or str(uuid.uuid4())
        async with self._lock:
            if instance_id not in self._instances:
                self._instances[instance_id] = WorkflowInstance(
                    id=instance_id,
                    workflow_name=workflow_name,
                    workflow_version=workflow_version,
                    current_flow=flow,
                    inputs=dict(inputs),
                    correlation_key=correlation_key,
                )
        return instance_id

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        inst = self._instances.get(instance_id)
        return inst.model_copy(deep=True) if inst else None

    async def record_step_result(
        self,
        instance_id: str,
        step_name: str,
        output: Any,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        async with self._lock:
            inst = self._get(instance_id)
            if not inst.accepts_results:
                raise InstanceClosed(instance_id, "cancelling" if inst.cancel_requested else inst.status.value)
            self._check_version(inst, expected_version)
            if inst.has_step(step_name):
                if inst.current_step != step_name:
                    inst.current_step = step_name
                    self._touch(inst)
            else:
                inst.steps.append(
                    StepRecord(step_name=step_name, seq=len(inst.steps) + 1, output=output)
                )
                inst.current_step = step_name
                self._touch(inst)
            return inst.model_copy(deep=True)

    async def enter_flow(
        self,
        instance_id: str,
        flow: str,
        expected_version: Optional[int] = None,
        consume_pending: bool = False,
    ) -> WorkflowInstance:
        async with self._lock:
            inst = self._get(instance_id)
            if inst.status != InstanceStatus.RUNNING:
                raise InstanceClosed(instance_id, inst.status.value)
            self._check_version(inst, expected_version)
            if consume_pending and inst.pending_flows:
                inst.pending_flows.pop(0)
            inst.current_flow = flow
            inst.current_step = None
            self._touch(inst)
            return inst.model_copy(deep=True)

    async def suspend(
        self, instance_id: str, expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        async with self._lock:
            inst = self._get(instance_id)
            if inst.status != InstanceStatus.RUNNING:
                raise InstanceClosed(instance_id, inst.status.value)
            self._check_version(inst, expected_version)
            if inst.pending_flows:
                raise StateConflict(instance_id, expected_version, inst.version)
            inst.status = InstanceStatus.SUSPENDED
            self._touch(inst)
            return inst.model_copy(deep=True)

    async def append_event(
        self,
        instance_id: str,
        event_name: str,
        payload: dict[str, Any],
        flow: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[WorkflowInstance, bool]:
        async with self._lock:
            inst = self._get(instance_id)
            if inst.is_terminal:
                raise InstanceClosed(instance_id, inst.status.value)
            self._check_version(inst, expected_version)
            if dedupe_key and any(e.dedupe_key == dedupe_key for e in inst.events):
                return inst.model_copy(deep=True), False
            inst.events.append(
                EventRecord(
                    seq=len(inst.events) + 1,
                    event_name=event_name,
                    payload=dict(payload),
                    flow=flow,
                    dedupe_key=dedupe_key,
                )
            )
            if flow:
                inst.pending_flows.append(flow)
            woke = inst.status == InstanceStatus.SUSPENDED
            if woke:
                inst.status = InstanceStatus.RUNNING
            self._touch(inst)
            return inst.model_copy(deep=True), woke

    async def mark_terminal(
        self,
        instance_id: str,
        status: InstanceStatus | str,
        reason: Optional[str] = None,
        failed_step: Optional[str] = None,
    ) -> bool:
        status = InstanceStatus(status)
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        async with self._lock:
            inst = self._get(instance_id)
            if inst.is_terminal:
                return False
            inst.status = status
            inst.failure_reason = reason
            inst.completed_at = utcnow()
            if reason and status in (InstanceStatus.FAILED, InstanceStatus.STOPPED):
                inst.failures.append(FailureRecord(step_name=failed_step, message=reason))
            self._touch(inst)
            return True

    async def request_cancel(self, instance_id: str) -> bool:
        async with self._lock:
            inst = self._get(instance_id)
            if inst.status == InstanceStatus.RUNNING and not inst.cancel_requested:
                inst.cancel_requested = True
            elif inst.status == InstanceStatus.SUSPENDED:
                inst.status = InstanceStatus.CANCELLED
                inst.failure_reason = "cancelled"
                inst.completed_at = utcnow()
            else:
                return False
            self._touch(inst)
            return True

    async def record_escalation(
        self, instance_id: str, step_name: Optional[str], message: str
    ) -> None:
        async with self._lock:
            inst = self._get(instance_id)
            inst.failures.append(
                FailureRecord(kind="escalation", step_name=step_name, message=message)
            )

    async def find_by_correlation(
        self, workflow_name: str, correlation_key: str
    ) -> WorkflowInstance | None:
        candidates = [
            i
            for i in self._instances.values()
            if i.workflow_name == workflow_name
            and i.correlation_key == correlation_key
            and not i.is_terminal
        ]
        if not candidates:
            return None
        newest = max(candidates, key=lambda i: (i.started_at, i.id))
        return newest.model_copy(deep=True)

    async def list_instances(
        self,
        status: Optional[InstanceStatus | str] = None,
        workflow_name: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowInstance]:
        selected = [
            i
            for i in self._instances.values()
            if (status is None or i.status == InstanceStatus(status))
            and (workflow_name is None or i.workflow_name == workflow_name)
        ]
        selected.sort(key=lambda i: (i.started_at, i.id), reverse=True)
        return [
            i.model_copy(update={"steps": [], "events": [], "failures": []}, deep=True)
            for i in selected[:limit]
        ]

    async def workflow_stats(self, workflow_name: str, days: int = 7) -> WorkflowStats:
        window = StatsWindow(days=days)
        since = window.since()
        async with self._lock:
            rows = [
                (i.status.value, i.started_at, i.completed_at)
                for i in self._instances.values()
                if i.workflow_name == workflow_name and i.started_at > since
            ]
        return WorkflowStats.aggregate(workflow_name, window.days, since, rows)

    async def purge(self, policy: RetentionPolicy) -> int:
        statuses = policy.eligible_statuses(TERMINAL_INSTANCE_STATUSES)
        cutoff = policy.cutoff()
        async with self._lock:
            doomed = [
                i.id
                for i in self._instances.values()
                if i.status.value in statuses
                and i.completed_at is not None
                and i.completed_at < cutoff
            ]
            for instance_id in doomed:
                del self._instances[instance_id]
        return len(doomed)

    async def ping(self) -> None:
        return None
