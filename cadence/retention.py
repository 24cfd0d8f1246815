"""Retention policy for terminal jobs and workflow instances."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from .utils.clock import utcnow

MAX_RETENTION_DAYS = 3650


class RetentionPolicy(BaseModel):
    """Which terminal records may be deleted, and after how long.

    ``max_age_days`` must be a real integer; strings such as ``"30; DROP"``
    are rejected instead of being coerced.
    """

    model_config = ConfigDict(frozen=True)

    max_age_days: StrictInt = Field(ge=0, le=MAX_RETENTION_DAYS)
    statuses: frozenset[str] = frozenset()

    def cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Records completed strictly before this instant are eligible."""
        return (now or utcnow()) - timedelta(days=self.max_age_days)

    def eligible_statuses(self, terminal: frozenset[str]) -> list[str]:
        """Return the requested statuses, restricted to ``terminal`` ones.

        An empty selection means every terminal status.
        """
        if not self.statuses:
            return sorted(terminal)
        unknown = self.statuses - terminal
        if unknown:
            raise ValueError(f"Retention only applies to terminal statuses, got {sorted(unknown)}")
        return sorted(self.statuses)


class StatsWindow(BaseModel):
    """Look-back window for workflow statistics, validated like retention."""

    model_config = ConfigDict(frozen=True)

    days: StrictInt = Field(default=7, ge=1, le=MAX_RETENTION_DAYS)

    def since(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) - timedelta(days=self.days)
