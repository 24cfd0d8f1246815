"""In-memory implementation of the job store."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..errors import JobNotFound
from ..retention import RetentionPolicy
from ..utils.clock import utcnow
from .models import Job, JobPriority, JobStats, JobStatus
from .store import TERMINAL_JOB_STATUSES, JobStore

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """Keep the job queue in local memory.

    Useful for tests or single-process deployments. Every operation runs
    inside one ``asyncio.Lock`` critical section, which makes ``claim``
    atomic for all workers of the same event loop. Data is not persisted
    across process restarts.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._dedupe: Dict[str, str] = {}
        self._slots: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        priority: JobPriority | str = JobPriority.NORMAL,
        dedupe_key: Optional[str] = None,
    ) -> str:
        async with self._lock:
            if dedupe_key and dedupe_key in self._dedupe:
                return self._dedupe[dedupe_key]
            job = Job(
                kind=kind,
                payload=dict(payload),
                priority=JobPriority(priority),
                dedupe_key=dedupe_key,
            )
            self._jobs[job.id] = job
            if dedupe_key:
                self._dedupe[dedupe_key] = job.id
        logger.debug(f"Enqueued {kind} job {job.id} with priority {job.priority.value}")
        return job.id

    async def claim(self, worker_id: str, visibility_timeout: float) -> Optional[Job]:
        async with self._lock:
            now = utcnow()
            abandoned_before = now - timedelta(seconds=visibility_timeout)
            eligible: List[Job] = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING
                or (
                    job.status == JobStatus.PROCESSING
                    and job.started_at is not None
                    and job.started_at <= abandoned_before
                )
            ]
            if not eligible:
                return None
            job = min(eligible, key=Job.claim_order)
            if job.status == JobStatus.PROCESSING:
                logger.warning(
                    f"Reclaiming job {job.id} abandoned by {job.claimed_by} (attempt {job.attempt})"
                )
                job.attempt += 1
            job.status = JobStatus.PROCESSING
            job.claimed_by = worker_id
            job.started_at = now
            job.updated_at = now
            return job.model_copy(deep=True)

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        worker_id: Optional[str],
        result: dict[str, Any] | None = None,
        error: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return False
            if worker_id is not None and job.claimed_by != worker_id:
                return False
            now = utcnow()
            job.status = status
            job.result = result
            job.error = error
            job.completed_at = now
            job.updated_at = now
            if status == JobStatus.COMPLETED:
                job.progress = 100.0
            return True

    async def complete(
        self, job_id: str, result: dict[str, Any] | None, worker_id: Optional[str] = None
    ) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED, worker_id, result=result)

    async def fail(self, job_id: str, error: str, worker_id: Optional[str] = None) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, worker_id, error=error)

    async def status(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job.model_copy(deep=True)

    async def update_progress(self, job_id: str, progress: float) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job and job.status == JobStatus.PROCESSING:
                job.progress = max(0.0, min(100.0, progress))
                job.updated_at = utcnow()

    async def cancel(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            now = utcnow()
            job.status = JobStatus.CANCELLED
            job.completed_at = now
            job.updated_at = now
            return True

    async def retry(self, job_id: str) -> str:
        async with self._lock:
            old = self._jobs.get(job_id)
            if old is None:
                raise JobNotFound(f"Job {job_id} not found")
            if old.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
                raise ValueError(f"Job {job_id} is {old.status.value}; only failed or cancelled jobs can be retried")
            job = Job(
                kind=old.kind,
                payload=dict(old.payload),
                priority=old.priority,
                attempt=old.attempt + 1,
                retry_of=old.id,
            )
            self._jobs[job.id] = job
            return job.id

    async def list_jobs(
        self,
        status: Optional[JobStatus | str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        jobs = [
            j
            for j in self._jobs.values()
            if (status is None or j.status == JobStatus(status))
            and (kind is None or j.kind == kind)
        ]
        jobs.sort(key=lambda j: (j.created_at, j.id), reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def has_active_job(self, instance_id: str) -> bool:
        return any(
            j.status in (JobStatus.PENDING, JobStatus.PROCESSING)
            and (j.id == instance_id or j.payload.get("instance_id") == instance_id)
            for j in self._jobs.values()
        )

    async def stats(self) -> JobStats:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return JobStats(total=len(self._jobs), **counts)

    async def purge(self, policy: RetentionPolicy) -> int:
        statuses = policy.eligible_statuses(TERMINAL_JOB_STATUSES)
        cutoff = policy.cutoff()
        async with self._lock:
            doomed = [
                j.id
                for j in self._jobs.values()
                if j.status.value in statuses
                and j.completed_at is not None
                and j.completed_at < cutoff
            ]
            for job_id in doomed:
                job = self._jobs.pop(job_id)
                if job.dedupe_key:
                    self._dedupe.pop(job.dedupe_key, None)
        return len(doomed)

    # ------------------------------------------------------------------
    # Rolling-window counters
    async def reserve_slot(
        self, key: str, token: str, limit: int, window_seconds: int
    ) -> bool:
        async with self._lock:
            now = utcnow()
            window_start = now - timedelta(seconds=window_seconds)
            slots = self._slots.setdefault(key, {})
            for stale in [t for t, ts in slots.items() if ts <= window_start]:
                del slots[stale]
            if token in slots:
                return True
            if len(slots) >= limit:
                return False
            slots[token] = now
            return True

    async def release_slot(self, key: str, token: str) -> None:
        async with self._lock:
            self._slots.get(key, {}).pop(token, None)

    async def count_slots(self, key: str, window_seconds: int) -> int:
        window_start = utcnow() - timedelta(seconds=window_seconds)
        return sum(1 for ts in self._slots.get(key, {}).values() if ts > window_start)

    async def ping(self) -> None:
        return None
