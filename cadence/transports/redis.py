"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..contracts import EventEnvelope
from .base import BaseTransport, Delivery

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport):
    """Each topic is a Redis list named ``cadence:<topic>``.

    Producers ``LPUSH`` and subscribers ``BRPOP``, so the list is a FIFO
    queue. A nack pushes the raw event back onto the consuming end, where it
    is the next one popped.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        block_timeout: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.block_timeout = block_timeout
        self._client: Optional[redis.Redis] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"cadence:{topic}"

    def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        return self._client

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        await self._redis().lpush(self.queue_name(topic), event.to_json())

    async def subscribe(self, topic: str, lifespan: Optional[float] = None) -> AsyncIterator[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            popped = await self._redis().brpop(self.queue_name(topic), timeout=self.block_timeout)
            if not popped:
                continue
            _, raw = popped
            try:
                envelope = EventEnvelope.from_json(raw)
            except PydanticValidationError as exc:
                logger.warning(f"Discarding malformed event on {topic}: {exc}")
                continue
            yield Delivery(topic=topic, envelope=envelope, receipt=raw)

    async def ack(self, delivery: Delivery) -> None:
        # BRPOP already removed the event
        pass

    async def nack(self, delivery: Delivery) -> None:
        await self._redis().rpush(self.queue_name(delivery.topic), delivery.receipt)
        logger.info(f"Returned event {delivery.envelope.event_id} to {delivery.topic}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
