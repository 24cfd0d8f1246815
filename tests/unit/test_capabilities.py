"""Capability resolver: handler registration and invocation."""

import asyncio
import time

import pytest

from cadence.capabilities import CapabilityResolver
from cadence.errors import UnknownCapability


@pytest.mark.asyncio
async def test_blocking_sync_handler_times_out():
    def slow_crm_lookup(inputs):
        time.sleep(0.5)
        return {"company": "Acme"}

    resolver = CapabilityResolver({"lookup": slow_crm_lookup})
    started = time.monotonic()
    with pytest.raises(asyncio.TimeoutError):
        await resolver.invoke("lookup", {"email": "a@b.com"}, timeout=0.05)
    assert time.monotonic() - started < 0.4


@pytest.mark.asyncio
async def test_sync_handler_does_not_block_the_loop():
    ticks = []

    def blocking(inputs):
        time.sleep(0.2)
        return {"ok": True}

    async def ticker():
        for _ in range(5):
            ticks.append(time.monotonic())
            await asyncio.sleep(0.01)

    resolver = CapabilityResolver({"blocking": blocking})
    result, _ = await asyncio.gather(resolver.invoke("blocking", {}, timeout=1.0), ticker())

    assert result == {"ok": True}
    assert len(ticks) == 5
    assert ticks[-1] - ticks[0] < 0.15


@pytest.mark.asyncio
async def test_async_callable_objects_run_on_the_loop():
    class Scorer:
        async def __call__(self, inputs):
            return {"score": len(inputs["email"])}

    resolver = CapabilityResolver()
    resolver.register("score", Scorer())
    assert await resolver.invoke("score", {"email": "a@b.com"}, timeout=1.0) == {"score": 7}


@pytest.mark.asyncio
async def test_handler_receives_a_copy_of_inputs():
    inputs = {"email": "a@b.com"}

    def mutating(received):
        received["email"] = "changed"
        return {}

    resolver = CapabilityResolver({"mutate": mutating})
    await resolver.invoke("mutate", inputs, timeout=1.0)
    assert inputs == {"email": "a@b.com"}


def test_unknown_capability():
    resolver = CapabilityResolver()

    @resolver.capability()
    def enrich_lead(inputs):
        return {}

    assert "enrich_lead" in resolver
    assert resolver.names() == ["enrich_lead"]
    with pytest.raises(UnknownCapability):
        resolver.resolve("send_sms")
