"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional

from ..contracts import EventEnvelope
from .base import BaseTransport, Delivery


class InMemoryTransport(BaseTransport):
    """Per-topic FIFO queues for tests and single-process deployments.

    A nacked event goes back to the head of its queue.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        async with self._lock:
            self._queues[topic].append(event.to_json())

    async def subscribe(self, topic: str, lifespan: Optional[float] = None) -> AsyncIterator[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            async with self._lock:
                raw = self._queues[topic].popleft() if self._queues[topic] else None
            if raw is None:
                await asyncio.sleep(self._poll_interval)
                continue
            yield Delivery(topic=topic, envelope=EventEnvelope.from_json(raw), receipt=raw)

    async def ack(self, delivery: Delivery) -> None:
        pass

    async def nack(self, delivery: Delivery) -> None:
        async with self._lock:
            self._queues[delivery.topic].appendleft(delivery.receipt)
