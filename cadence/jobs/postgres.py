"""PostgreSQL implementation of the job store."""

from __future__ import annotations

import json
import uuid
from datetime import timedelta
from typing import Any, Optional

import asyncpg

from ..errors import JobNotFound
from ..retention import RetentionPolicy
from ..utils.clock import utcnow
from .models import Job, JobPriority, JobStats, JobStatus
from .store import TERMINAL_JOB_STATUSES, JobStore

_JOB_COLUMNS = (
    "id, kind, status, priority, priority_rank, payload, result, error, progress, "
    "attempt, claimed_by, dedupe_key, retry_of, created_at, started_at, completed_at, updated_at"
)

# SKIP LOCKED lets concurrent claimers pass over a row another transaction is
# already taking instead of queueing behind it.
_CLAIM_SQL = f"""
UPDATE jobs
SET status     = 'processing',
    claimed_by = $1,
    started_at = $2,
    updated_at = $2,
    attempt    = CASE WHEN jobs.status = 'processing' THEN jobs.attempt + 1 ELSE jobs.attempt END
WHERE id = (
    SELECT id FROM jobs
    WHERE status = 'pending'
       OR (status = 'processing' AND started_at <= $3)
    ORDER BY priority_rank DESC, created_at ASC, id ASC
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
RETURNING {_JOB_COLUMNS}
"""


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _record_to_job(r: asyncpg.Record) -> Job:
    return Job(
        id=r["id"],
        kind=r["kind"],
        status=JobStatus(r["status"]),
        priority=JobPriority(r["priority"]),
        payload=_load_json(r["payload"]) or {},
        result=_load_json(r["result"]),
        error=r["error"],
        progress=r["progress"],
        attempt=r["attempt"],
        claimed_by=r["claimed_by"],
        dedupe_key=r["dedupe_key"],
        retry_of=r["retry_of"],
        created_at=r["created_at"],
        started_at=r["started_at"],
        completed_at=r["completed_at"],
        updated_at=r["updated_at"],
    )


class PostgresJobStore(JobStore):
    """Persist the job queue using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                priority TEXT NOT NULL,
                priority_rank INTEGER NOT NULL,
                payload JSONB NOT NULL,
                result JSONB,
                error TEXT,
                progress DOUBLE PRECISION NOT NULL DEFAULT 0,
                attempt INTEGER NOT NULL DEFAULT 1,
                claimed_by TEXT,
                dedupe_key TEXT UNIQUE,
                retry_of TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_jobs_claim
            ON jobs (status, priority_rank DESC, created_at, id)
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_slots (
                key TEXT NOT NULL,
                token TEXT NOT NULL,
                reserved_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (key, token)
            )
            """
        )

    # ------------------------------------------------------------------
    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        priority: JobPriority | str = JobPriority.NORMAL,
        dedupe_key: Optional[str] = None,
    ) -> str:
        priority = JobPriority(priority)
        job_id = str(uuid.uuid4())
        now = utcnow()
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO jobs ({_JOB_COLUMNS})
                    VALUES ($1, $2, 'pending', $3, $4, $5, NULL, NULL, 0, 1, NULL, $6, NULL, $7, NULL, NULL, $7)
                    ON CONFLICT (dedupe_key) DO NOTHING
                    """,
                    job_id,
                    kind,
                    priority.value,
                    priority.rank,
                    json.dumps(payload),
                    dedupe_key,
                    now,
                )
                if dedupe_key is not None:
                    job_id = await conn.fetchval(
                        "SELECT id FROM jobs WHERE dedupe_key = $1", dedupe_key
                    )
        finally:
            await conn.close()
        return job_id

    async def claim(self, worker_id: str, visibility_timeout: float) -> Optional[Job]:
        now = utcnow()
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                _CLAIM_SQL, worker_id, now, now - timedelta(seconds=visibility_timeout)
            )
        finally:
            await conn.close()
        return _record_to_job(row) if row else None

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        worker_id: Optional[str],
        result: dict[str, Any] | None = None,
        error: Optional[str] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                """
                UPDATE jobs
                SET status = $1, result = $2, error = $3, completed_at = $4, updated_at = $4,
                    progress = CASE WHEN $1 = 'completed' THEN 100 ELSE progress END
                WHERE id = $5 AND status = 'processing'
                  AND ($6::text IS NULL OR claimed_by = $6)
                """,
                status.value,
                json.dumps(result) if result is not None else None,
                error,
                utcnow(),
                job_id,
                worker_id,
            )
        finally:
            await conn.close()
        return outcome.endswith(" 1")

    async def complete(
        self, job_id: str, result: dict[str, Any] | None, worker_id: Optional[str] = None
    ) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED, worker_id, result=result)

    async def fail(self, job_id: str, error: str, worker_id: Optional[str] = None) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, worker_id, error=error)

    async def status(self, job_id: str) -> Job:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = $1", job_id)
        finally:
            await conn.close()
        if row is None:
            raise JobNotFound(f"Job {job_id} not found")
        return _record_to_job(row)

    async def update_progress(self, job_id: str, progress: float) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE jobs SET progress = $1, updated_at = $2 WHERE id = $3 AND status = 'processing'",
                max(0.0, min(100.0, float(progress))),
                utcnow(),
                job_id,
            )
        finally:
            await conn.close()

    async def cancel(self, job_id: str) -> bool:
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                """
                UPDATE jobs SET status = 'cancelled', completed_at = $1, updated_at = $1
                WHERE id = $2 AND status = 'pending'
                """,
                utcnow(),
                job_id,
            )
        finally:
            await conn.close()
        return outcome.endswith(" 1")

    async def retry(self, job_id: str) -> str:
        new_id = str(uuid.uuid4())
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if row is None:
                    raise JobNotFound(f"Job {job_id} not found")
                if row["status"] not in (JobStatus.FAILED.value, JobStatus.CANCELLED.value):
                    raise ValueError(
                        f"Job {job_id} is {row['status']}; only failed or cancelled jobs can be retried"
                    )
                now = utcnow()
                await conn.execute(
                    f"""
                    INSERT INTO jobs ({_JOB_COLUMNS})
                    VALUES ($1, $2, 'pending', $3, $4, $5, NULL, NULL, 0, $6, NULL, NULL, $7, $8, NULL, NULL, $8)
                    """,
                    new_id,
                    row["kind"],
                    row["priority"],
                    row["priority_rank"],
                    json.dumps(_load_json(row["payload"])),
                    row["attempt"] + 1,
                    job_id,
                    now,
                )
        finally:
            await conn.close()
        return new_id

    async def list_jobs(
        self,
        status: Optional[JobStatus | str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        status_value = JobStatus(status).value if status is not None else None
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE ($1::text IS NULL OR status = $1) AND ($2::text IS NULL OR kind = $2)
                ORDER BY created_at DESC, id DESC
                LIMIT $3
                """,
                status_value,
                kind,
                int(limit),
            )
        finally:
            await conn.close()
        return [_record_to_job(r) for r in rows]

    async def has_active_job(self, instance_id: str) -> bool:
        conn = await self._connect()
        try:
            found = await conn.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM jobs
                    WHERE status IN ('pending', 'processing')
                      AND (id = $1 OR payload->>'instance_id' = $1)
                )
                """,
                instance_id,
            )
        finally:
            await conn.close()
        return bool(found)

    async def stats(self) -> JobStats:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status")
        finally:
            await conn.close()
        counts = {r["status"]: r["n"] for r in rows}
        return JobStats(total=sum(counts.values()), **counts)

    async def purge(self, policy: RetentionPolicy) -> int:
        statuses = policy.eligible_statuses(TERMINAL_JOB_STATUSES)
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                "DELETE FROM jobs WHERE status = ANY($1::text[]) AND completed_at < $2",
                statuses,
                policy.cutoff(),
            )
        finally:
            await conn.close()
        return int(outcome.split()[-1])

    # ------------------------------------------------------------------
    async def reserve_slot(
        self, key: str, token: str, limit: int, window_seconds: int
    ) -> bool:
        now = utcnow()
        conn = await self._connect()
        try:
            async with conn.transaction():
                # Serializes reservations per key across connections.
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
                await conn.execute(
                    "DELETE FROM rate_slots WHERE key = $1 AND reserved_at <= $2",
                    key,
                    now - timedelta(seconds=window_seconds),
                )
                held = await conn.fetchval(
                    "SELECT 1 FROM rate_slots WHERE key = $1 AND token = $2", key, token
                )
                if held:
                    return True
                used = await conn.fetchval("SELECT COUNT(*) FROM rate_slots WHERE key = $1", key)
                if used >= limit:
                    return False
                await conn.execute(
                    "INSERT INTO rate_slots (key, token, reserved_at) VALUES ($1, $2, $3)",
                    key,
                    token,
                    now,
                )
                return True
        finally:
            await conn.close()

    async def release_slot(self, key: str, token: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM rate_slots WHERE key = $1 AND token = $2", key, token)
        finally:
            await conn.close()

    async def count_slots(self, key: str, window_seconds: int) -> int:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM rate_slots WHERE key = $1 AND reserved_at > $2",
                key,
                utcnow() - timedelta(seconds=window_seconds),
            )
        finally:
            await conn.close()

    async def ping(self) -> None:
        conn = await self._connect()
        await conn.close()
