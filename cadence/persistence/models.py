"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from ..utils.clock import utcnow


class InstanceStatus(str, Enum):
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_INSTANCE_STATUSES


TERMINAL_INSTANCE_STATUSES = frozenset({"completed", "failed", "stopped", "cancelled"})


class StepRecord(BaseModel):
    """Recorded output of one completed step."""

    step_name: str
    seq: int
    output: Any = None
    recorded_at: datetime = Field(default_factory=utcnow)


class EventRecord(BaseModel):
    """External event injected into a running instance."""

    seq: int
    event_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    flow: Optional[str] = None
    dedupe_key: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class FailureRecord(BaseModel):
    """Entry in an instance's failure and escalation history."""

    kind: str = "failure"  # failure | escalation
    step_name: Optional[str] = None
    message: str
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """Persisted workflow instance data."""

    id: str
    workflow_name: str
    workflow_version: int = 1
    status: InstanceStatus = InstanceStatus.RUNNING
    current_flow: str = "main"
    current_step: Optional[str] = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    steps: list[StepRecord] = Field(default_factory=list)
    events: list[EventRecord] = Field(default_factory=list)
    pending_flows: list[str] = Field(default_factory=list)
    failures: list[FailureRecord] = Field(default_factory=list)
    correlation_key: Optional[str] = None
    version: int = 0
    cancel_requested: bool = False
    failure_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def context(self) -> dict[str, Any]:
        """Step outputs keyed by step name, in recording order."""
        return {s.step_name: s.output for s in sorted(self.steps, key=lambda s: s.seq)}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def accepts_results(self) -> bool:
        return self.status == InstanceStatus.RUNNING and not self.cancel_requested

    def has_step(self, step_name: str) -> bool:
        return any(s.step_name == step_name for s in self.steps)

    def latest_events(self) -> dict[str, dict[str, Any]]:
        """Most recent payload per event name."""
        latest: dict[str, dict[str, Any]] = {}
        for event in sorted(self.events, key=lambda e: e.seq):
            latest[event.event_name] = event.payload
        return latest

    def scope(self) -> dict[str, Any]:
        """Evaluation scope for field references.

        ``inputs.<name>``, ``events.<event>.<field>`` and ``<step>.<field>``
        all resolve against this mapping.
        """
        scope: dict[str, Any] = dict(self.context)
        scope["inputs"] = self.inputs
        scope["events"] = self.latest_events()
        return scope


class StatusStats(BaseModel):
    status: InstanceStatus
    count: int
    avg_duration_seconds: Optional[float] = None


class WorkflowStats(BaseModel):
    """Instance counts by status for one workflow over a look-back window.

    ``avg_duration_seconds`` only covers instances that have finished.
    """

    workflow_name: str
    days: int
    since: datetime
    total: int = 0
    by_status: list[StatusStats] = Field(default_factory=list)

    def count(self, status: InstanceStatus | str) -> int:
        status = InstanceStatus(status)
        return next((s.count for s in self.by_status if s.status == status), 0)

    @classmethod
    def aggregate(
        cls,
        workflow_name: str,
        days: int,
        since: datetime,
        rows: Iterable[tuple[str, datetime, Optional[datetime]]],
    ) -> WorkflowStats:
        """Build stats from ``(status, started_at, completed_at)`` rows."""
        durations: dict[str, list[Optional[float]]] = {}
        for status, started_at, completed_at in rows:
            elapsed = (completed_at - started_at).total_seconds() if completed_at else None
            durations.setdefault(status, []).append(elapsed)

        by_status = []
        for status in sorted(durations):
            finished = [d for d in durations[status] if d is not None]
            by_status.append(
                StatusStats(
                    status=status,
                    count=len(durations[status]),
                    avg_duration_seconds=sum(finished) / len(finished) if finished else None,
                )
            )
        return cls(
            workflow_name=workflow_name,
            days=days,
            since=since,
            total=sum(s.count for s in by_status),
            by_status=by_status,
        )
