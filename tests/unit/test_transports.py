"""Event transports: delivery order, settlement and redelivery."""

import pytest

from cadence.contracts import EventEnvelope
from cadence.transports import Delivery, InMemoryTransport
from cadence.transports.redis import RedisTransport


def _reply(message_id, body="interested"):
    return EventEnvelope(
        name="prospect_replied",
        payload={"email": "a@b.com", "body": body, "message_id": message_id},
        correlation_key="a@b.com",
    )


@pytest.mark.asyncio
async def test_inmemory_delivers_in_publish_order():
    transport = InMemoryTransport(poll_interval=0.01)
    first, second = _reply("m1"), _reply("m2", body="call me")
    await transport.publish("events", first)
    await transport.publish("events", second)

    received = []
    async for delivery in transport.subscribe("events", lifespan=0.05):
        assert isinstance(delivery, Delivery)
        assert delivery.topic == "events"
        received.append(delivery.envelope)
        await transport.ack(delivery)

    assert [e.event_id for e in received] == [first.event_id, second.event_id]
    assert received[1].payload["body"] == "call me"
    assert received[0].correlation_key == "a@b.com"
    assert transport.pending("events") == 0


@pytest.mark.asyncio
async def test_nacked_event_is_delivered_again_first():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("events", _reply("m1"))
    await transport.publish("events", _reply("m2"))

    async for delivery in transport.subscribe("events", lifespan=0.05):
        await transport.nack(delivery)
        break

    assert transport.pending("events") == 2
    redelivered = [d.envelope.payload["message_id"] async for d in transport.subscribe("events", lifespan=0.05)]
    assert redelivered == ["m1", "m2"]


@pytest.mark.asyncio
async def test_topics_are_independent():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("replies", _reply("m1"))

    assert [d async for d in transport.subscribe("leads", lifespan=0.03)] == []
    assert transport.pending("replies") == 1


def test_envelope_json_keeps_identity():
    event = EventEnvelope(name="lead_created", payload={"lead_id": "L1"})
    assert EventEnvelope.from_json(event.to_json()) == event


@pytest.mark.asyncio
async def test_redis_transport_is_lazy():
    transport = RedisTransport(host="redis.internal", port=6380)
    assert transport.queue_name("events") == "cadence:events"
    # no connection is opened until the first publish or subscribe
    await transport.close()
