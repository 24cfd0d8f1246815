"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..retention import RetentionPolicy
from .models import InstanceStatus, WorkflowInstance, WorkflowStats


class WorkflowStateStore(Protocol):
    """Protocol for workflow state persistence backends.

    The store is the single source of truth for instance progress. Every
    mutating call bumps ``version``; callers that pass ``expected_version``
    get ``StateConflict`` when another writer got there first.
    """

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
        """Persist a new running instance; a known ``instance_id`` is a no-op."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve the instance with its context, events and failures."""

    async def record_step_result(
        self,
        instance_id: str,
        step_name: str,
        output: Any,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        """Upsert a step output keyed by ``(instance_id, step_name)``."""

    async def enter_flow(
        self,
        instance_id: str,
        flow: str,
        expected_version: Optional[int] = None,
        consume_pending: bool = False,
    ) -> WorkflowInstance:
        """Point the instance at the start of ``flow``."""

    async def suspend(
        self, instance_id: str, expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        """Park a running instance until an event wakes it."""

    async def append_event(
        self,
        instance_id: str,
        event_name: str,
        payload: dict[str, Any],
        flow: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[WorkflowInstance, bool]:
        """Inject an event; returns the instance and whether it was woken."""

    async def mark_terminal(
        self,
        instance_id: str,
        status: InstanceStatus | str,
        reason: Optional[str] = None,
        failed_step: Optional[str] = None,
    ) -> bool:
        """Move the instance to a terminal status (first writer wins)."""

    async def request_cancel(self, instance_id: str) -> bool:
        """Ask the driving processor to stop at the next step boundary."""

    async def record_escalation(
        self, instance_id: str, step_name: Optional[str], message: str
    ) -> None:
        """Append an escalation to the failure history."""

    async def find_by_correlation(
        self, workflow_name: str, correlation_key: str
    ) -> WorkflowInstance | None:
        """Return the newest non-terminal instance with this correlation key."""

    async def list_instances(
        self,
        status: Optional[InstanceStatus | str] = None,
        workflow_name: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowInstance]:
        """Return instances (without step detail), newest first."""

    async def purge(self, policy: RetentionPolicy) -> int:
        """Delete terminal instances older than the policy allows."""

    async def workflow_stats(self, workflow_name: str, days: int = 7) -> WorkflowStats:
        """Count instances of ``workflow_name`` started in the last ``days`` by status."""

    async def ping(self) -> None:
        """Raise if the store is unreachable."""
