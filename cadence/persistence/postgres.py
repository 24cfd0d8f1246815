"""PostgreSQL implementation of the workflow state store."""

from __future__ import annotations

import json
import uuid
from typing import Any, Optional

import asyncpg

from ..errors import InstanceClosed, InstanceNotFound, StateConflict
from ..retention import RetentionPolicy, StatsWindow
from ..utils.clock import utcnow
from .models import (
    TERMINAL_INSTANCE_STATUSES,
    EventRecord,
    FailureRecord,
    InstanceStatus,
    StatusStats,
    StepRecord,
    WorkflowInstance,
    WorkflowStats,
)
from .repository import WorkflowStateStore

_INSTANCE_COLUMNS = (
    "id, workflow_name, workflow_version, status, current_flow, current_step, inputs, "
    "pending_flows, correlation_key, version, cancel_requested, failure_reason, "
    "started_at, updated_at, completed_at"
)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _record_to_instance(r: asyncpg.Record) -> WorkflowInstance:
    return WorkflowInstance(
        id=r["id"],
        workflow_name=r["workflow_name"],
        workflow_version=r["workflow_version"],
        status=InstanceStatus(r["status"]),
        current_flow=r["current_flow"],
        current_step=r["current_step"],
        inputs=_load_json(r["inputs"]) or {},
        pending_flows=_load_json(r["pending_flows"]) or [],
        correlation_key=r["correlation_key"],
        version=r["version"],
        cancel_requested=r["cancel_requested"],
        failure_reason=r["failure_reason"],
        started_at=r["started_at"],
        updated_at=r["updated_at"],
        completed_at=r["completed_at"],
    )


class PostgresWorkflowStateStore(WorkflowStateStore):
    """Persist workflow state using PostgreSQL.

    Mutations lock the instance row with ``SELECT ... FOR UPDATE`` so that
    version checks and writes happen atomically across processes.
    """

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
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                workflow_version INTEGER NOT NULL,
                status TEXT NOT NULL,
                current_flow TEXT NOT NULL,
                current_step TEXT,
                inputs JSONB NOT NULL,
                pending_flows JSONB NOT NULL DEFAULT '[]',
                correlation_key TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                failure_reason TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_instances_correlation
            ON workflow_instances (workflow_name, correlation_key, status)
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                instance_id TEXT NOT NULL REFERENCES workflow_instances(id) ON DELETE CASCADE,
                step_name TEXT NOT NULL,
                seq INTEGER NOT NULL,
                output JSONB,
                recorded_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (instance_id, step_name)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_events (
                instance_id TEXT NOT NULL REFERENCES workflow_instances(id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                event_name TEXT NOT NULL,
                payload JSONB NOT NULL,
                flow TEXT,
                dedupe_key TEXT,
                received_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (instance_id, seq),
                UNIQUE (instance_id, dedupe_key)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_failures (
                id SERIAL PRIMARY KEY,
                instance_id TEXT NOT NULL REFERENCES workflow_instances(id) ON DELETE CASCADE,
                kind TEXT NOT NULL,
                step_name TEXT,
                message TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def _load(
        self, conn: asyncpg.Connection, instance_id: str, for_update: bool = False
    ) -> WorkflowInstance | None:
        lock = " FOR UPDATE" if for_update else ""
        row = await conn.fetchrow(
            f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = $1{lock}",
            instance_id,
        )
        if row is None:
            return None
        inst = _record_to_instance(row)
        step_rows = await conn.fetch(
            "SELECT step_name, seq, output, recorded_at FROM workflow_steps "
            "WHERE instance_id = $1 ORDER BY seq",
            instance_id,
        )
        inst.steps = [
            StepRecord(
                step_name=r["step_name"],
                seq=r["seq"],
                output=_load_json(r["output"]),
                recorded_at=r["recorded_at"],
            )
            for r in step_rows
        ]
        event_rows = await conn.fetch(
            "SELECT seq, event_name, payload, flow, dedupe_key, received_at "
            "FROM workflow_events WHERE instance_id = $1 ORDER BY seq",
            instance_id,
        )
        inst.events = [
            EventRecord(
                seq=r["seq"],
                event_name=r["event_name"],
                payload=_load_json(r["payload"]) or {},
                flow=r["flow"],
                dedupe_key=r["dedupe_key"],
                received_at=r["received_at"],
            )
            for r in event_rows
        ]
        failure_rows = await conn.fetch(
            "SELECT kind, step_name, message, created_at FROM workflow_failures "
            "WHERE instance_id = $1 ORDER BY id",
            instance_id,
        )
        inst.failures = [
            FailureRecord(
                kind=r["kind"],
                step_name=r["step_name"],
                message=r["message"],
                created_at=r["created_at"],
            )
            for r in failure_rows
        ]
        return inst

    async def _require(self, conn: asyncpg.Connection, instance_id: str) -> WorkflowInstance:
        inst = await self._load(conn, instance_id, for_update=True)
        if inst is None:
            raise InstanceNotFound(f"Workflow instance {instance_id} not found")
        return inst

    @staticmethod
    def _check_version(inst: WorkflowInstance, expected_version: Optional[int]) -> None:
        if expected_version is not None and inst.version != expected_version:
            raise StateConflict(inst.id, expected_version, inst.version)

    @staticmethod
    async def _save(conn: asyncpg.Connection, inst: WorkflowInstance) -> None:
        inst.version += 1
        inst.updated_at = utcnow()
        await conn.execute(
            """
            UPDATE workflow_instances
            SET status = $1, current_flow = $2, current_step = $3, pending_flows = $4,
                version = $5, cancel_requested = $6, failure_reason = $7,
                updated_at = $8, completed_at = $9
            WHERE id = $10
            """,
            inst.status.value,
            inst.current_flow,
            inst.current_step,
            json.dumps(inst.pending_flows),
            inst.version,
            inst.cancel_requested,
            inst.failure_reason,
            inst.updated_at,
            inst.completed_at,
            inst.id,
        )

    @staticmethod
    async def _insert_failure(
        conn: asyncpg.Connection, instance_id: str, record: FailureRecord
    ) -> None:
        await conn.execute(
            """
            INSERT INTO workflow_failures (instance_id, kind, step_name, message, created_at)
            VALUES ($1, $2, $3, $4, $5)
            """,
            instance_id,
            record.kind,
            record.step_name,
            record.message,
            record.created_at,
        )

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
        now = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO workflow_instances ({_INSTANCE_COLUMNS})
                VALUES ($1, $2, $3, 'running', $4, NULL, $5, '[]', $6, 0, FALSE, NULL, $7, $7, NULL)
                ON CONFLICT (id) DO NOTHING
                """,
                instance_id,
                workflow_name,
                workflow_version,
                flow,
                json.dumps(inputs),
                correlation_key,
                now,
            )
        finally:
            await conn.close()
        return instance_id

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            return await self._load(conn, instance_id)
        finally:
            await conn.close()

    async def record_step_result(
        self,
        instance_id: str,
        step_name: str,
        output: Any,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        conn = await self._connect()
        try:
            async with conn.transaction():
                inst = await self._require(conn, instance_id)
                if not inst.accepts_results:
                    raise InstanceClosed(
                        instance_id, "cancelling" if inst.cancel_requested else inst.status.value
                    )
                self._check_version(inst, expected_version)
                if inst.has_step(step_name):
                    if inst.current_step == step_name:
                        return inst
                else:
                    record = StepRecord(
                        step_name=step_name, seq=len(inst.steps) + 1, output=output
                    )
                    await conn.execute(
                        """
                        INSERT INTO workflow_steps (instance_id, step_name, seq, output, recorded_at)
                        VALUES ($1, $2, $3, $4, $5)
                        """,
                        instance_id,
                        step_name,
                        record.seq,
                        json.dumps(output),
                        record.recorded_at,
                    )
                    inst.steps.append(record)
                inst.current_step = step_name
                await self._save(conn, inst)
                return inst
        finally:
            await conn.close()

    async def enter_flow(
        self,
        instance_id: str,
        flow: str,
        expected_version: Optional[int] = None,
        consume_pending: bool = False,
    ) -> WorkflowInstance:
        conn = await self._connect()
        try:
            async with conn.transaction():
                inst = await self._require(conn, instance_id)
                if inst.status != InstanceStatus.RUNNING:
                    raise InstanceClosed(instance_id, inst.status.value)
                self._check_version(inst, expected_version)
                if consume_pending and inst.pending_flows:
                    inst.pending_flows.pop(0)
                inst.current_flow = flow
                inst.current_step = None
                await self._save(conn, inst)
                return inst
        finally:
            await conn.close()

    async def suspend(
        self, instance_id: str, expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        conn = await self._connect()
        try:
            async with conn.transaction():
                inst = await self._require(conn, instance_id)
                if inst.status != InstanceStatus.RUNNING:
                    raise InstanceClosed(instance_id, inst.status.value)
                self._check_version(inst, expected_version)
                if inst.pending_flows:
                    raise StateConflict(instance_id, expected_version, inst.version)
                inst.status = InstanceStatus.SUSPENDED
                await self._save(conn, inst)
                return inst
        finally:
            await conn.close()

    async def append_event(
        self,
        instance_id: str,
        event_name: str,
        payload: dict[str, Any],
        flow: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[WorkflowInstance, bool]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                inst = await self._require(conn, instance_id)
                if inst.is_terminal:
                    raise InstanceClosed(instance_id, inst.status.value)
                self._check_version(inst, expected_version)
                if dedupe_key and any(e.dedupe_key == dedupe_key for e in inst.events):
                    return inst, False
                record = EventRecord(
                    seq=len(inst.events) + 1,
                    event_name=event_name,
                    payload=dict(payload),
                    flow=flow,
                    dedupe_key=dedupe_key,
                )
                await conn.execute(
                    """
                    INSERT INTO workflow_events
                        (instance_id, seq, event_name, payload, flow, dedupe_key, received_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    instance_id,
                    record.seq,
                    event_name,
                    json.dumps(record.payload),
                    flow,
                    dedupe_key,
                    record.received_at,
                )
                inst.events.append(record)
                if flow:
                    inst.pending_flows.append(flow)
                woke = inst.status == InstanceStatus.SUSPENDED
                if woke:
                    inst.status = InstanceStatus.RUNNING
                await self._save(conn, inst)
                return inst, woke
        finally:
            await conn.close()

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
        conn = await self._connect()
        try:
            async with conn.transaction():
                inst = await self._require(conn, instance_id)
                if inst.is_terminal:
                    return False
                inst.status = status
                inst.failure_reason = reason
                inst.completed_at = utcnow()
                if reason and status in (InstanceStatus.FAILED, InstanceStatus.STOPPED):
                    await self._insert_failure(
                        conn, instance_id, FailureRecord(step_name=failed_step, message=reason)
                    )
                await self._save(conn, inst)
                return True
        finally:
            await conn.close()

    async def request_cancel(self, instance_id: str) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                inst = await self._require(conn, instance_id)
                if inst.status == InstanceStatus.RUNNING and not inst.cancel_requested:
                    inst.cancel_requested = True
                elif inst.status == InstanceStatus.SUSPENDED:
                    inst.status = InstanceStatus.CANCELLED
                    inst.failure_reason = "cancelled"
                    inst.completed_at = utcnow()
                else:
                    return False
                await self._save(conn, inst)
                return True
        finally:
            await conn.close()

    async def record_escalation(
        self, instance_id: str, step_name: Optional[str], message: str
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await self._require(conn, instance_id)
                await self._insert_failure(
                    conn,
                    instance_id,
                    FailureRecord(kind="escalation", step_name=step_name, message=message),
                )
        finally:
            await conn.close()

    async def find_by_correlation(
        self, workflow_name: str, correlation_key: str
    ) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            instance_id = await conn.fetchval(
                """
                SELECT id FROM workflow_instances
                WHERE workflow_name = $1 AND correlation_key = $2
                  AND status IN ('running', 'suspended')
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                workflow_name,
                correlation_key,
            )
            if instance_id is None:
                return None
            return await self._load(conn, instance_id)
        finally:
            await conn.close()

    async def list_instances(
        self,
        status: Optional[InstanceStatus | str] = None,
        workflow_name: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowInstance]:
        status_value = InstanceStatus(status).value if status is not None else None
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_INSTANCE_COLUMNS} FROM workflow_instances
                WHERE ($1::text IS NULL OR status = $1) AND ($2::text IS NULL OR workflow_name = $2)
                ORDER BY started_at DESC, id DESC
                LIMIT $3
                """,
                status_value,
                workflow_name,
                int(limit),
            )
        finally:
            await conn.close()
        return [_record_to_instance(r) for r in rows]

    async def workflow_stats(self, workflow_name: str, days: int = 7) -> WorkflowStats:
        window = StatsWindow(days=days)
        since = window.since()
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT status,
                       COUNT(*) AS n,
                       AVG(EXTRACT(EPOCH FROM (completed_at - started_at))) AS avg_duration
                FROM workflow_instances
                WHERE workflow_name = $1 AND started_at > $2
                GROUP BY status
                ORDER BY status
                """,
                workflow_name,
                since,
            )
        finally:
            await conn.close()
        by_status = [
            StatusStats(
                status=r["status"],
                count=r["n"],
                avg_duration_seconds=float(r["avg_duration"]) if r["avg_duration"] is not None else None,
            )
            for r in rows
        ]
        return WorkflowStats(
            workflow_name=workflow_name,
            days=window.days,
            since=since,
            total=sum(s.count for s in by_status),
            by_status=by_status,
        )

    async def purge(self, policy: RetentionPolicy) -> int:
        statuses = policy.eligible_statuses(TERMINAL_INSTANCE_STATUSES)
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                "DELETE FROM workflow_instances WHERE status = ANY($1::text[]) AND completed_at < $2",
                statuses,
                policy.cutoff(),
            )
        finally:
            await conn.close()
        return int(outcome.split()[-1])

    async def ping(self) -> None:
        conn = await self._connect()
        await conn.close()
