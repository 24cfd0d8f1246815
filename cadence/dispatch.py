"""Workflow submission and status read model."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .definitions import DefinitionRegistry
from .errors import InstanceNotFound
from .jobs import Job, JobKind, JobPriority, JobStatus, JobStore
from .persistence import InstanceStatus, WorkflowInstance, WorkflowStateStore

logger = logging.getLogger(__name__)


class SubmissionReceipt(BaseModel):
    """Returned to callers that submit a workflow."""

    job_id: str
    status_url: str


class WorkflowStatus(BaseModel):
    """Read model combining a job with the instance it drives.

    This is derived data; the job store and state store remain the source of
    truth and nothing here is ever written back.
    """

    job_id: str
    kind: str
    job_status: JobStatus
    priority: JobPriority
    progress: float = 0.0
    attempt: int = 1
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    instance_id: Optional[str] = None
    workflow_name: Optional[str] = None
    instance_status: Optional[InstanceStatus] = None
    current_flow: Optional[str] = None
    current_step: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


def instance_id_for(job: Job) -> str:
    """Workflow jobs drive the instance sharing their id; resume jobs name theirs."""
    return job.payload.get("instance_id") or job.id


class WorkflowDispatcher:
    """Service responsible for submitting workflows as jobs."""

    def __init__(
        self,
        job_store: JobStore,
        registry: DefinitionRegistry,
        state_store: Optional[WorkflowStateStore] = None,
        status_url_template: str = "/api/workflows/{job_id}",
    ) -> None:
        self._job_store = job_store
        self._registry = registry
        self._state_store = state_store
        self._status_url_template = status_url_template

    async def submit(
        self,
        name: str,
        inputs: Optional[Dict[str, Any]] = None,
        priority: JobPriority | str = JobPriority.NORMAL,
        *,
        flow: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        event: Optional[Dict[str, Any]] = None,
    ) -> SubmissionReceipt:
        """Queue a new workflow instance.

        Args:
            name: Registered workflow definition name.
            inputs: Workflow inputs; every declared input must be present.
            priority: Job priority used for claim ordering.
            flow: Flow to start in (defaults to the definition's entry flow).
            dedupe_key: Repeated submissions with the same key return the same job.
            event: Triggering event recorded on the instance before the first step.

        Returns:
            Receipt with the job id and where to poll its status.
        """
        definition = self._registry.get(name)
        inputs = dict(inputs or {})
        missing = [i for i in definition.inputs if i not in inputs]
        if missing:
            raise ValueError(f"Workflow '{name}' is missing inputs: {', '.join(missing)}")
        flow = flow or definition.entry
        if flow not in definition.flows:
            raise ValueError(f"Workflow '{name}' has no flow '{flow}'")

        payload: Dict[str, Any] = {
            "workflow": definition.name,
            "version": definition.version,
            "inputs": inputs,
            "flow": flow,
        }
        if event is not None:
            payload["event"] = event
        job_id = await self._job_store.enqueue(
            JobKind.WORKFLOW.value, payload, priority, dedupe_key
        )
        logger.info(f"Submitted workflow {name} as job {job_id}")
        return SubmissionReceipt(
            job_id=job_id, status_url=self._status_url_template.format(job_id=job_id)
        )

    async def status(self, job_id: str) -> WorkflowStatus:
        job = await self._job_store.status(job_id)
        instance: Optional[WorkflowInstance] = None
        if self._state_store is not None:
            instance = await self._state_store.get_instance(instance_id_for(job))

        status = WorkflowStatus(
            job_id=job.id,
            kind=job.kind,
            job_status=job.status,
            priority=job.priority,
            progress=job.progress,
            attempt=job.attempt,
            error=job.error,
            result=job.result,
            workflow_name=job.payload.get("workflow"),
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
        if instance is not None:
            status.instance_id = instance.id
            status.workflow_name = instance.workflow_name
            status.instance_status = instance.status
            status.current_flow = instance.current_flow
            status.current_step = instance.current_step
            status.completed_steps = list(instance.context)
            status.failure_reason = instance.failure_reason
        return status

    async def cancel(self, job_id: str) -> bool:
        """Cancel a pending job, or ask the processor to stop its instance."""
        if await self._job_store.cancel(job_id):
            logger.info(f"Cancelled pending job {job_id}")
            return True
        if self._state_store is None:
            return False
        job = await self._job_store.status(job_id)
        try:
            requested = await self._state_store.request_cancel(instance_id_for(job))
        except InstanceNotFound:
            return False
        if requested:
            logger.info(f"Cancellation requested for instance of job {job_id}")
        return requested
