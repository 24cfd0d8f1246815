"""SQLite implementation of the job store."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import timedelta
from typing import Any, Optional

from ..errors import JobNotFound
from ..retention import RetentionPolicy
from ..utils.clock import from_iso, to_iso, utcnow
from ..utils.sqlite import SQLiteBackend
from .models import Job, JobPriority, JobStats, JobStatus
from .store import TERMINAL_JOB_STATUSES, JobStore

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "id, kind, status, priority, priority_rank, payload, result, error, progress, "
    "attempt, claimed_by, dedupe_key, retry_of, created_at, started_at, completed_at, updated_at"
)

# Eligible rows are pending jobs and processing jobs whose claimant went quiet
# for longer than the visibility timeout. Selection and update happen in a
# single statement; ``attempt`` is bumped only when an abandoned job is taken.
_CLAIM_SQL = """
UPDATE jobs
SET status     = 'processing',
    claimed_by = :worker_id,
    started_at = :now,
    updated_at = :now,
    attempt    = CASE WHEN status = 'processing' THEN attempt + 1 ELSE attempt END
WHERE id = (
    SELECT id FROM jobs
    WHERE status = 'pending'
       OR (status = 'processing' AND started_at <= :abandoned_before)
    ORDER BY priority_rank DESC, created_at ASC, id ASC
    LIMIT 1
)
RETURNING *
"""

_FINISH_SQL = """
UPDATE jobs
SET status = :status, result = :result, error = :error,
    completed_at = :now, updated_at = :now,
    progress = CASE WHEN :status = 'completed' THEN 100.0 ELSE progress END
WHERE id = :job_id
  AND status = 'processing'
  AND (:worker_id IS NULL OR claimed_by = :worker_id)
"""


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        kind=row["kind"],
        status=JobStatus(row["status"]),
        priority=JobPriority(row["priority"]),
        payload=json.loads(row["payload"]) if row["payload"] else {},
        result=json.loads(row["result"]) if row["result"] else None,
        error=row["error"],
        progress=row["progress"] or 0.0,
        attempt=row["attempt"],
        claimed_by=row["claimed_by"],
        dedupe_key=row["dedupe_key"],
        retry_of=row["retry_of"],
        created_at=from_iso(row["created_at"]),
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        updated_at=from_iso(row["updated_at"]),
    )


class SQLiteJobStore(SQLiteBackend, JobStore):
    """Persist the job queue using SQLite."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            status TEXT NOT NULL,
            priority TEXT NOT NULL,
            priority_rank INTEGER NOT NULL,
            payload TEXT NOT NULL,
            result TEXT,
            error TEXT,
            progress REAL NOT NULL DEFAULT 0,
            attempt INTEGER NOT NULL DEFAULT 1,
            claimed_by TEXT,
            dedupe_key TEXT UNIQUE,
            retry_of TEXT,
            created_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT,
            updated_at TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_claim
        ON jobs (status, priority_rank DESC, created_at, id)
        """,
        "CREATE INDEX IF NOT EXISTS idx_jobs_kind ON jobs (kind, status)",
        """
        CREATE TABLE IF NOT EXISTS rate_slots (
            key TEXT NOT NULL,
            token TEXT NOT NULL,
            reserved_at TEXT NOT NULL,
            PRIMARY KEY (key, token)
        )
        """,
    )

    # ------------------------------------------------------------------
    # Queue API
    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        priority: JobPriority | str = JobPriority.NORMAL,
        dedupe_key: Optional[str] = None,
    ) -> str:
        priority = JobPriority(priority)
        job_id = str(uuid.uuid4())
        now = to_iso(utcnow())

        def _insert(conn: sqlite3.Connection) -> str:
            conn.execute(
                f"""
                INSERT INTO jobs ({_JOB_COLUMNS})
                VALUES (?, ?, 'pending', ?, ?, ?, NULL, NULL, 0, 1, NULL, ?, NULL, ?, NULL, NULL, ?)
                ON CONFLICT (dedupe_key) DO NOTHING
                """,
                (job_id, kind, priority.value, priority.rank, json.dumps(payload), dedupe_key, now, now),
            )
            if dedupe_key is None:
                return job_id
            row = conn.execute("SELECT id FROM jobs WHERE dedupe_key = ?", (dedupe_key,)).fetchone()
            return row["id"]

        stored_id = await self._transaction(_insert)
        logger.debug(f"Enqueued {kind} job {stored_id} with priority {priority.value}")
        return stored_id

    async def claim(self, worker_id: str, visibility_timeout: float) -> Optional[Job]:
        now = utcnow()
        params = {
            "worker_id": worker_id,
            "now": to_iso(now),
            "abandoned_before": to_iso(now - timedelta(seconds=visibility_timeout)),
        }
        row = await self._transaction(lambda conn: conn.execute(_CLAIM_SQL, params).fetchone())
        if row is None:
            return None
        job = _row_to_job(row)
        logger.debug(f"Worker {worker_id} claimed job {job.id} (attempt {job.attempt})")
        return job

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        worker_id: Optional[str],
        result: dict[str, Any] | None = None,
        error: Optional[str] = None,
    ) -> bool:
        params = {
            "status": status.value,
            "result": json.dumps(result) if result is not None else None,
            "error": error,
            "now": to_iso(utcnow()),
            "job_id": job_id,
            "worker_id": worker_id,
        }
        changed = await self._transaction(lambda conn: conn.execute(_FINISH_SQL, params).rowcount)
        return changed == 1

    async def complete(
        self, job_id: str, result: dict[str, Any] | None, worker_id: Optional[str] = None
    ) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED, worker_id, result=result)

    async def fail(self, job_id: str, error: str, worker_id: Optional[str] = None) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, worker_id, error=error)

    async def status(self, job_id: str) -> Job:
        row = await self._fetchone(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", job_id)
        if row is None:
            raise JobNotFound(f"Job {job_id} not found")
        return _row_to_job(row)

    async def update_progress(self, job_id: str, progress: float) -> None:
        progress = max(0.0, min(100.0, float(progress)))
        await self._transaction(
            lambda conn: conn.execute(
                "UPDATE jobs SET progress = ?, updated_at = ? WHERE id = ? AND status = 'processing'",
                (progress, to_iso(utcnow()), job_id),
            )
        )

    async def cancel(self, job_id: str) -> bool:
        now = to_iso(utcnow())
        changed = await self._transaction(
            lambda conn: conn.execute(
                """
                UPDATE jobs SET status = 'cancelled', completed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (now, now, job_id),
            ).rowcount
        )
        return changed == 1

    async def retry(self, job_id: str) -> str:
        new_id = str(uuid.uuid4())
        now = to_iso(utcnow())

        def _retry(conn: sqlite3.Connection) -> str:
            row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                raise JobNotFound(f"Job {job_id} not found")
            if row["status"] not in (JobStatus.FAILED.value, JobStatus.CANCELLED.value):
                raise ValueError(
                    f"Job {job_id} is {row['status']}; only failed or cancelled jobs can be retried"
                )
            conn.execute(
                f"""
                INSERT INTO jobs ({_JOB_COLUMNS})
                VALUES (?, ?, 'pending', ?, ?, ?, NULL, NULL, 0, ?, NULL, NULL, ?, ?, NULL, NULL, ?)
                """,
                (
                    new_id,
                    row["kind"],
                    row["priority"],
                    row["priority_rank"],
                    row["payload"],
                    row["attempt"] + 1,
                    job_id,
                    now,
                    now,
                ),
            )
            return new_id

        return await self._transaction(_retry)

    async def list_jobs(
        self,
        status: Optional[JobStatus | str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        status_value = JobStatus(status).value if status is not None else None
        rows = await self._fetchall(
            f"""
            SELECT {_JOB_COLUMNS} FROM jobs
            WHERE (? IS NULL OR status = ?) AND (? IS NULL OR kind = ?)
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            status_value,
            status_value,
            kind,
            kind,
            int(limit),
        )
        return [_row_to_job(r) for r in rows]

    async def has_active_job(self, instance_id: str) -> bool:
        row = await self._fetchone(
            """
            SELECT 1 FROM jobs
            WHERE status IN ('pending', 'processing')
              AND (id = ? OR json_extract(payload, '$.instance_id') = ?)
            LIMIT 1
            """,
            instance_id,
            instance_id,
        )
        return row is not None

    async def stats(self) -> JobStats:
        rows = await self._fetchall("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        counts = {r["status"]: r["n"] for r in rows}
        return JobStats(total=sum(counts.values()), **counts)

    async def purge(self, policy: RetentionPolicy) -> int:
        statuses = policy.eligible_statuses(TERMINAL_JOB_STATUSES)
        placeholders = ", ".join("?" for _ in statuses)
        cutoff = to_iso(policy.cutoff())
        return await self._transaction(
            lambda conn: conn.execute(
                f"DELETE FROM jobs WHERE status IN ({placeholders}) AND completed_at < ?",
                (*statuses, cutoff),
            ).rowcount
        )

    # ------------------------------------------------------------------
    # Rolling-window counters
    async def reserve_slot(
        self, key: str, token: str, limit: int, window_seconds: int
    ) -> bool:
        now = utcnow()
        window_start = to_iso(now - timedelta(seconds=window_seconds))

        def _reserve(conn: sqlite3.Connection) -> bool:
            conn.execute(
                "DELETE FROM rate_slots WHERE key = ? AND reserved_at <= ?", (key, window_start)
            )
            held = conn.execute(
                "SELECT 1 FROM rate_slots WHERE key = ? AND token = ?", (key, token)
            ).fetchone()
            if held is not None:
                return True
            used = conn.execute("SELECT COUNT(*) FROM rate_slots WHERE key = ?", (key,)).fetchone()[0]
            if used >= limit:
                return False
            conn.execute(
                "INSERT INTO rate_slots (key, token, reserved_at) VALUES (?, ?, ?)",
                (key, token, to_iso(now)),
            )
            return True

        return await self._transaction(_reserve)

    async def release_slot(self, key: str, token: str) -> None:
        await self._transaction(
            lambda conn: conn.execute(
                "DELETE FROM rate_slots WHERE key = ? AND token = ?", (key, token)
            )
        )

    async def count_slots(self, key: str, window_seconds: int) -> int:
        window_start = to_iso(utcnow() - timedelta(seconds=window_seconds))
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM rate_slots WHERE key = ? AND reserved_at > ?",
            key,
            window_start,
        )
        return row["n"]
