"""Persistence layer for workflow instance state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CadenceConfig, load_config
from .inmemory import InMemoryWorkflowStateStore
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
from .sqlite import SQLiteWorkflowStateStore


def get_state_store(
    database_url: Optional[str] = None, config: Optional[CadenceConfig] = None
) -> WorkflowStateStore:
    """Factory function to obtain a workflow state store.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via ``CADENCE_DATABASE_URL`` / ``DATABASE_URL`` or from loaded
    configuration. When no database is configured, an in-memory store is
    returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CADENCE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryWorkflowStateStore()
    if database_url.startswith("sqlite://"):
        return SQLiteWorkflowStateStore(database_url.replace("sqlite://", "", 1))
    if database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresWorkflowStateStore

        return PostgresWorkflowStateStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "EventRecord",
    "FailureRecord",
    "InstanceStatus",
    "StatusStats",
    "StepRecord",
    "TERMINAL_INSTANCE_STATUSES",
    "WorkflowInstance",
    "WorkflowStats",
    "WorkflowStateStore",
    "InMemoryWorkflowStateStore",
    "SQLiteWorkflowStateStore",
    "get_state_store",
]
