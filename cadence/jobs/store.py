"""Job store abstraction."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..retention import RetentionPolicy
from .models import Job, JobPriority, JobStats, JobStatus

TERMINAL_JOB_STATUSES = frozenset(
    s.value for s in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
)


class JobStore(Protocol):
    """Protocol for durable job queues.

    ``claim`` is the only way a job leaves ``pending``. Implementations must
    perform the eligibility check and the status change as one atomic
    operation so that concurrent claimers never receive the same job.
    """

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        priority: JobPriority | str = JobPriority.NORMAL,
        dedupe_key: Optional[str] = None,
    ) -> str:
        """Queue a new job and return its id."""

    async def claim(self, worker_id: str, visibility_timeout: float) -> Optional[Job]:
        """Take ownership of the next eligible job, if any."""

    async def complete(
        self, job_id: str, result: dict[str, Any] | None, worker_id: Optional[str] = None
    ) -> bool:
        """Move a processing job to ``completed``."""

    async def fail(self, job_id: str, error: str, worker_id: Optional[str] = None) -> bool:
        """Move a processing job to ``failed``."""

    async def status(self, job_id: str) -> Job:
        """Return the job or raise ``JobNotFound``."""

    async def update_progress(self, job_id: str, progress: float) -> None:
        """Record progress (0-100) for a processing job."""

    async def cancel(self, job_id: str) -> bool:
        """Cancel a pending job."""

    async def retry(self, job_id: str) -> str:
        """Create a new attempt for a failed or cancelled job."""

    async def list_jobs(
        self,
        status: Optional[JobStatus | str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """Return jobs, newest first."""

    async def has_active_job(self, instance_id: str) -> bool:
        """Whether a pending or processing job drives ``instance_id``."""

    async def stats(self) -> JobStats:
        """Return job counts by status."""

    async def purge(self, policy: RetentionPolicy) -> int:
        """Delete terminal jobs older than the policy allows."""

    async def reserve_slot(
        self, key: str, token: str, limit: int, window_seconds: int
    ) -> bool:
        """Atomically take one slot of a rolling-window counter."""

    async def release_slot(self, key: str, token: str) -> None:
        """Give back a slot taken by ``token``."""

    async def count_slots(self, key: str, window_seconds: int) -> int:
        """Return the number of slots used within the window."""

    async def ping(self) -> None:
        """Raise if the store is unreachable."""
