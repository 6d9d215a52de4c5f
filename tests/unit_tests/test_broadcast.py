import asyncio

import pytest

from pool_node.state.broadcast import LatestValueBroadcast


async def next_value(stream, timeout=0.5):
    return await asyncio.wait_for(stream.__anext__(), timeout=timeout)


class TestLatestValueBroadcast:
    async def test_rejects_none(self):
        b = LatestValueBroadcast()
        with pytest.raises(ValueError):
            await b.publish(None)
        assert b.latest is None

    async def test_subscriber_waits_for_first_value(self):
        b = LatestValueBroadcast()
        stream = b.subscribe()
        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.02)
        assert not pending.done()

        await b.publish("a")
        assert await asyncio.wait_for(pending, timeout=0.5) == "a"
        await stream.aclose()

    async def test_late_subscriber_replays_latest_only(self):
        b = LatestValueBroadcast()
        await b.publish(1)
        await b.publish(2)

        stream = b.subscribe()
        assert await next_value(stream) == 2
        await stream.aclose()

    async def test_seen_value_is_not_redelivered(self):
        b = LatestValueBroadcast()
        await b.publish("x")
        stream = b.subscribe()
        assert await next_value(stream) == "x"

        pending = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0.02)
        assert not pending.done()

        await b.publish("y")
        assert await asyncio.wait_for(pending, timeout=0.5) == "y"
        await stream.aclose()

    async def test_fan_out_to_all_subscribers(self):
        b = LatestValueBroadcast()
        streams = [b.subscribe() for _ in range(3)]
        pending = [asyncio.ensure_future(s.__anext__()) for s in streams]
        await asyncio.sleep(0.01)
        assert b.subscriber_count == 3

        await b.publish(99)
        assert await asyncio.wait_for(asyncio.gather(*pending), timeout=0.5) == [99, 99, 99]
        for s in streams:
            await s.aclose()
        assert b.subscriber_count == 0
