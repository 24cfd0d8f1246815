"""Durable job queue for cadence."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CadenceConfig, load_config
from .inmemory import InMemoryJobStore
from .models import Job, JobKind, JobPriority, JobStats, JobStatus
from .sqlite import SQLiteJobStore
from .store import TERMINAL_JOB_STATUSES, JobStore


def get_job_store(
    database_url: Optional[str] = None, config: Optional[CadenceConfig] = None
) -> JobStore:
    """Factory function to obtain a job store.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via ``CADENCE_DATABASE_URL`` / ``DATABASE_URL`` or from loaded
    configuration. Without a database an in-memory store is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CADENCE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryJobStore()
    if database_url.startswith("sqlite://"):
        return SQLiteJobStore(database_url.replace("sqlite://", "", 1))
    if database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresJobStore

        return PostgresJobStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Job",
    "JobKind",
    "JobPriority",
    "JobStats",
    "JobStatus",
    "JobStore",
    "InMemoryJobStore",
    "SQLiteJobStore",
    "TERMINAL_JOB_STATUSES",
    "get_job_store",
]
