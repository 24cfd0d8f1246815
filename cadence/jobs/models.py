"""Data models for queued work items."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..utils.clock import utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Ordinal used for claim ordering; higher is claimed first."""
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.CRITICAL: 3,
}


class JobKind(str, Enum):
    WORKFLOW = "workflow"
    RESUME = "resume"


class Job(BaseModel):
    """A unit of asynchronous work."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: str
    status: JobStatus = JobStatus.PENDING
    priority: JobPriority = JobPriority.NORMAL
    payload: dict[str, Any] = Field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    progress: float = 0.0
    attempt: int = 1
    claimed_by: Optional[str] = None
    dedupe_key: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def claim_order(self) -> tuple:
        """Sort key matching the store's claim ordering."""
        return (-self.priority.rank, self.created_at, self.id)


class JobStats(BaseModel):
    """Counts of jobs by status."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
