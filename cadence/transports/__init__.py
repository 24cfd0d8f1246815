"""Event transports that feed the trigger dispatcher."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CadenceConfig, load_config
from .base import BaseTransport, Delivery
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[CadenceConfig] = None
) -> BaseTransport:
    """Build the event transport named by ``backend``.

    Falls back to ``CADENCE_TRANSPORT`` and then to ``transport.backend`` in
    the loaded configuration. Redis settings always come from configuration.
    """
    config = config or load_config()
    name = (backend or os.getenv("CADENCE_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        from .redis import RedisTransport

        settings = config.transport.redis
        return RedisTransport(
            host=settings.host, port=settings.port, db=settings.db, password=settings.password
        )
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "Delivery", "InMemoryTransport", "get_transport"]
