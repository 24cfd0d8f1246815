"""Message contracts exchanged with event producers."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .utils.clock import utcnow


class EventEnvelope(BaseModel):
    """External event delivered over a transport.

    ``correlation_key`` is required when the event targets a running
    instance; producers that cannot supply it may rely on the trigger's
    ``correlation_field`` instead.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_key: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize envelope to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EventEnvelope":
        """Deserialize envelope from JSON."""
        return cls.model_validate_json(data)
