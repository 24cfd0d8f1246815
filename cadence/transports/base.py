"""Event transport interface used by the trigger dispatcher."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from ..contracts import EventEnvelope


@dataclass(frozen=True)
class Delivery:
    """One event handed to a subscriber.

    ``receipt`` is whatever the broker needs to settle the delivery; callers
    treat it as opaque.
    """

    topic: str
    envelope: EventEnvelope
    receipt: Any = None


class BaseTransport(metaclass=abc.ABCMeta):
    """At-least-once event delivery.

    A subscriber settles every delivery with ``ack`` once the event has been
    dispatched, or ``nack`` to hand it back for redelivery.
    """

    @abc.abstractmethod
    async def publish(self, topic: str, event: EventEnvelope) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(self, topic: str, lifespan: Optional[float] = None) -> AsyncIterator[Delivery]:
        """Yield deliveries until ``lifespan`` seconds pass (forever if None)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, delivery: Delivery) -> None:
        """Return the event so that the next subscriber sees it again."""
        raise NotImplementedError

    async def close(self) -> None:
        pass
