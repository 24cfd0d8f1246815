"""SQLite implementation of the workflow state store."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Any, Optional

from ..errors import InstanceClosed, InstanceNotFound, StateConflict
from ..retention import RetentionPolicy, StatsWindow
from ..utils.clock import from_iso, to_iso, utcnow
from ..utils.sqlite import SQLiteBackend
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

logger = logging.getLogger(__name__)

_INSTANCE_COLUMNS = (
    "id, workflow_name, workflow_version, status, current_flow, current_step, inputs, "
    "pending_flows, correlation_key, version, cancel_requested, failure_reason, "
    "started_at, updated_at, completed_at"
)


def _row_to_instance(row: sqlite3.Row) -> WorkflowInstance:
    return WorkflowInstance(
        id=row["id"],
        workflow_name=row["workflow_name"],
        workflow_version=row["workflow_version"],
        status=InstanceStatus(row["status"]),
        current_flow=row["current_flow"],
        current_step=row["current_step"],
        inputs=json.loads(row["inputs"]) if row["inputs"] else {},
        pending_flows=json.loads(row["pending_flows"]) if row["pending_flows"] else [],
        correlation_key=row["correlation_key"],
        version=row["version"],
        cancel_requested=bool(row["cancel_requested"]),
        failure_reason=row["failure_reason"],
        started_at=from_iso(row["started_at"]),
        updated_at=from_iso(row["updated_at"]),
        completed_at=from_iso(row["completed_at"]),
    )


def _load(conn: sqlite3.Connection, instance_id: str) -> WorkflowInstance | None:
    row = conn.execute(
        f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?", (instance_id,)
    ).fetchone()
    if row is None:
        return None
    inst = _row_to_instance(row)
    inst.steps = [
        StepRecord(
            step_name=r["step_name"],
            seq=r["seq"],
            output=json.loads(r["output"]) if r["output"] is not None else None,
            recorded_at=from_iso(r["recorded_at"]),
        )
        for r in conn.execute(
            "SELECT step_name, seq, output, recorded_at FROM workflow_steps "
            "WHERE instance_id = ? ORDER BY seq",
            (instance_id,),
        )
    ]
    inst.events = [
        EventRecord(
            seq=r["seq"],
            event_name=r["event_name"],
            payload=json.loads(r["payload"]) if r["payload"] else {},
            flow=r["flow"],
            dedupe_key=r["dedupe_key"],
            received_at=from_iso(r["received_at"]),
        )
        for r in conn.execute(
            "SELECT seq, event_name, payload, flow, dedupe_key, received_at "
            "FROM workflow_events WHERE instance_id = ? ORDER BY seq",
            (instance_id,),
        )
    ]
    inst.failures = [
        FailureRecord(
            kind=r["kind"],
            step_name=r["step_name"],
            message=r["message"],
            created_at=from_iso(r["created_at"]),
        )
        for r in conn.execute(
            "SELECT kind, step_name, message, created_at FROM workflow_failures "
            "WHERE instance_id = ? ORDER BY id",
            (instance_id,),
        )
    ]
    return inst


def _require(conn: sqlite3.Connection, instance_id: str) -> WorkflowInstance:
    inst = _load(conn, instance_id)
    if inst is None:
        raise InstanceNotFound(f"Workflow instance {instance_id} not found")
    return inst


def _check_version(inst: WorkflowInstance, expected_version: Optional[int]) -> None:
    if expected_version is not None and inst.version != expected_version:
        raise StateConflict(inst.id, expected_version, inst.version)


def _save(conn: sqlite3.Connection, inst: WorkflowInstance) -> None:
    """Write the instance row back, bumping its version."""
    inst.version += 1
    inst.updated_at = utcnow()
    conn.execute(
        """
        UPDATE workflow_instances
        SET status = ?, current_flow = ?, current_step = ?, pending_flows = ?,
            version = ?, cancel_requested = ?, failure_reason = ?,
            updated_at = ?, completed_at = ?
        WHERE id = ?
        """,
        (
            inst.status.value,
            inst.current_flow,
            inst.current_step,
            json.dumps(inst.pending_flows),
            inst.version,
            int(inst.cancel_requested),
            inst.failure_reason,
            to_iso(inst.updated_at),
            to_iso(inst.completed_at),
            inst.id,
        ),
    )


def _insert_failure(
    conn: sqlite3.Connection, instance_id: str, record: FailureRecord
) -> None:
    conn.execute(
        """
        INSERT INTO workflow_failures (instance_id, kind, step_name, message, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (instance_id, record.kind, record.step_name, record.message, to_iso(record.created_at)),
    )


class SQLiteWorkflowStateStore(SQLiteBackend, WorkflowStateStore):
    """Persist workflow state using SQLite."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS workflow_instances (
            id TEXT PRIMARY KEY,
            workflow_name TEXT NOT NULL,
            workflow_version INTEGER NOT NULL,
            status TEXT NOT NULL,
            current_flow TEXT NOT NULL,
            current_step TEXT,
            inputs TEXT NOT NULL,
            pending_flows TEXT NOT NULL DEFAULT '[]',
            correlation_key TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            failure_reason TEXT,
            started_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            completed_at TEXT
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_instances_correlation
        ON workflow_instances (workflow_name, correlation_key, status)
        """,
        """
        CREATE TABLE IF NOT EXISTS workflow_steps (
            instance_id TEXT NOT NULL REFERENCES workflow_instances(id) ON DELETE CASCADE,
            step_name TEXT NOT NULL,
            seq INTEGER NOT NULL,
            output TEXT,
            recorded_at TEXT NOT NULL,
            PRIMARY KEY (instance_id, step_name)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS workflow_events (
            instance_id TEXT NOT NULL REFERENCES workflow_instances(id) ON DELETE CASCADE,
            seq INTEGER NOT NULL,
            event_name TEXT NOT NULL,
            payload TEXT NOT NULL,
            flow TEXT,
            dedupe_key TEXT,
            received_at TEXT NOT NULL,
            PRIMARY KEY (instance_id, seq),
            UNIQUE (instance_id, dedupe_key)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS workflow_failures (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            instance_id TEXT NOT NULL REFERENCES workflow_instances(id) ON DELETE CASCADE,
            kind TEXT NOT NULL,
            step_name TEXT,
            message TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
    )

    def _connect(self) -> sqlite3.Connection:
        conn = super()._connect()
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    # ------------------------------------------------------------------
    # Repository API
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
        now = to_iso(utcnow())
        await self._transaction(
            lambda conn: conn.execute(
                f"""
                INSERT INTO workflow_instances ({_INSTANCE_COLUMNS})
                VALUES (?, ?, ?, 'running', ?, NULL, ?, '[]', ?, 0, 0, NULL, ?, ?, NULL)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    instance_id,
                    workflow_name,
                    workflow_version,
                    flow,
                    json.dumps(inputs),
                    correlation_key,
                    now,
                    now,
                ),
            )
        )
        return instance_id

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        return await self._read(lambda conn: _load(conn, instance_id))

    async def record_step_result(
        self,
        instance_id: str,
        step_name: str,
        output: Any,
        expected_version: Optional[int] = None,
    ) -> WorkflowInstance:
        def _record(conn: sqlite3.Connection) -> WorkflowInstance:
            inst = _require(conn, instance_id)
            if not inst.accepts_results:
                raise InstanceClosed(
                    instance_id, "cancelling" if inst.cancel_requested else inst.status.value
                )
            _check_version(inst, expected_version)
            if inst.has_step(step_name):
                if inst.current_step == step_name:
                    return inst
            else:
                record = StepRecord(step_name=step_name, seq=len(inst.steps) + 1, output=output)
                conn.execute(
                    """
                    INSERT INTO workflow_steps (instance_id, step_name, seq, output, recorded_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        instance_id,
                        step_name,
                        record.seq,
                        json.dumps(output),
                        to_iso(record.recorded_at),
                    ),
                )
                inst.steps.append(record)
            inst.current_step = step_name
            _save(conn, inst)
            return inst

        return await self._transaction(_record)

    async def enter_flow(
        self,
        instance_id: str,
        flow: str,
        expected_version: Optional[int] = None,
        consume_pending: bool = False,
    ) -> WorkflowInstance:
        def _enter(conn: sqlite3.Connection) -> WorkflowInstance:
            inst = _require(conn, instance_id)
            if inst.status != InstanceStatus.RUNNING:
                raise InstanceClosed(instance_id, inst.status.value)
            _check_version(inst, expected_version)
            if consume_pending and inst.pending_flows:
                inst.pending_flows.pop(0)
            inst.current_flow = flow
            inst.current_step = None
            _save(conn, inst)
            return inst

        return await self._transaction(_enter)

    async def suspend(
        self, instance_id: str, expected_version: Optional[int] = None
    ) -> WorkflowInstance:
        def _suspend(conn: sqlite3.Connection) -> WorkflowInstance:
            inst = _require(conn, instance_id)
            if inst.status != InstanceStatus.RUNNING:
                raise InstanceClosed(instance_id, inst.status.value)
            _check_version(inst, expected_version)
            if inst.pending_flows:
                raise StateConflict(instance_id, expected_version, inst.version)
            inst.status = InstanceStatus.SUSPENDED
            _save(conn, inst)
            return inst

        return await self._transaction(_suspend)

    async def append_event(
        self,
        instance_id: str,
        event_name: str,
        payload: dict[str, Any],
        flow: Optional[str] = None,
        dedupe_key: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[WorkflowInstance, bool]:
        def _append(conn: sqlite3.Connection) -> tuple[WorkflowInstance, bool]:
            inst = _require(conn, instance_id)
            if inst.is_terminal:
                raise InstanceClosed(instance_id, inst.status.value)
            _check_version(inst, expected_version)
            if dedupe_key and any(e.dedupe_key == dedupe_key for e in inst.events):
                return inst, False
            record = EventRecord(
                seq=len(inst.events) + 1,
                event_name=event_name,
                payload=dict(payload),
                flow=flow,
                dedupe_key=dedupe_key,
            )
            conn.execute(
                """
                INSERT INTO workflow_events
                    (instance_id, seq, event_name, payload, flow, dedupe_key, received_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    instance_id,
                    record.seq,
                    event_name,
                    json.dumps(record.payload),
                    flow,
                    dedupe_key,
                    to_iso(record.received_at),
                ),
            )
            inst.events.append(record)
            if flow:
                inst.pending_flows.append(flow)
            woke = inst.status == InstanceStatus.SUSPENDED
            if woke:
                inst.status = InstanceStatus.RUNNING
            _save(conn, inst)
            return inst, woke

        return await self._transaction(_append)

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

        def _mark(conn: sqlite3.Connection) -> bool:
            inst = _require(conn, instance_id)
            if inst.is_terminal:
                return False
            inst.status = status
            inst.failure_reason = reason
            inst.completed_at = utcnow()
            if reason and status in (InstanceStatus.FAILED, InstanceStatus.STOPPED):
                _insert_failure(
                    conn, instance_id, FailureRecord(step_name=failed_step, message=reason)
                )
            _save(conn, inst)
            return True

        changed = await self._transaction(_mark)
        if changed:
            logger.debug(f"Instance {instance_id} marked {status.value}")
        return changed

    async def request_cancel(self, instance_id: str) -> bool:
        def _cancel(conn: sqlite3.Connection) -> bool:
            inst = _require(conn, instance_id)
            if inst.status == InstanceStatus.RUNNING and not inst.cancel_requested:
                inst.cancel_requested = True
            elif inst.status == InstanceStatus.SUSPENDED:
                inst.status = InstanceStatus.CANCELLED
                inst.failure_reason = "cancelled"
                inst.completed_at = utcnow()
            else:
                return False
            _save(conn, inst)
            return True

        return await self._transaction(_cancel)

    async def record_escalation(
        self, instance_id: str, step_name: Optional[str], message: str
    ) -> None:
        def _escalate(conn: sqlite3.Connection) -> None:
            _require(conn, instance_id)
            _insert_failure(
                conn,
                instance_id,
                FailureRecord(kind="escalation", step_name=step_name, message=message),
            )

        await self._transaction(_escalate)

    async def find_by_correlation(
        self, workflow_name: str, correlation_key: str
    ) -> WorkflowInstance | None:
        def _find(conn: sqlite3.Connection) -> WorkflowInstance | None:
            row = conn.execute(
                """
                SELECT id FROM workflow_instances
                WHERE workflow_name = ? AND correlation_key = ?
                  AND status IN ('running', 'suspended')
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                (workflow_name, correlation_key),
            ).fetchone()
            return _load(conn, row["id"]) if row else None

        return await self._read(_find)

    async def list_instances(
        self,
        status: Optional[InstanceStatus | str] = None,
        workflow_name: Optional[str] = None,
        limit: int = 50,
    ) -> list[WorkflowInstance]:
        status_value = InstanceStatus(status).value if status is not None else None
        rows = await self._fetchall(
            f"""
            SELECT {_INSTANCE_COLUMNS} FROM workflow_instances
            WHERE (? IS NULL OR status = ?) AND (? IS NULL OR workflow_name = ?)
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,
            status_value,
            status_value,
            workflow_name,
            workflow_name,
            int(limit),
        )
        return [_row_to_instance(r) for r in rows]

    async def workflow_stats(self, workflow_name: str, days: int = 7) -> WorkflowStats:
        window = StatsWindow(days=days)
        since = window.since()
        rows = await self._fetchall(
            """
            SELECT status, started_at, completed_at FROM workflow_instances
            WHERE workflow_name = ? AND started_at > ?
            """,
            workflow_name,
            to_iso(since),
        )
        return WorkflowStats.aggregate(
            workflow_name,
            window.days,
            since,
            ((r["status"], from_iso(r["started_at"]), from_iso(r["completed_at"])) for r in rows),
        )

    async def purge(self, policy: RetentionPolicy) -> int:
        statuses = policy.eligible_statuses(TERMINAL_INSTANCE_STATUSES)
        placeholders = ", ".join("?" for _ in statuses)
        cutoff = to_iso(policy.cutoff())
        return await self._transaction(
            lambda conn: conn.execute(
                f"DELETE FROM workflow_instances WHERE status IN ({placeholders}) AND completed_at < ?",
                (*statuses, cutoff),
            ).rowcount
        )
