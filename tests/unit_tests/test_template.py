import asyncio
import gc
import json
import time

import pytest

from conftest import FakeNodeClient, fast_backoff, make_template, rpc_error
from pool_node.errors import TemplateUnavailableError
from pool_node.rpc.node import TEMPLATE_CAPABILITIES, TEMPLATE_MODE, TEMPLATE_RULES
from pool_node.state.template import TemplateCoordinator


def coordinator(client, store, process_id=None, **kwargs):
    kwargs.setdefault("fetch_retry", fast_backoff())
    kwargs.setdefault("wait_retry", fast_backoff())
    return TemplateCoordinator(client, store, process_id=process_id, **kwargs)


class TestCacheHit:
    async def test_persisted_payload_served_without_fetch(self, memory_store):
        payload = json.dumps(make_template(7))
        await memory_store.save_record(300, payload)
        client = FakeNodeClient()

        template = await coordinator(client, memory_store, "p1").get_template(300)
        assert client.fetch_calls == 0
        assert template.payload == payload
        assert template.raw["marker"] == 7

    async def test_repeated_reads_are_idempotent(self, memory_store):
        client = FakeNodeClient()
        coord = coordinator(client, memory_store, "p1")
        first = await coord.get_template(10)
        for _ in range(3):
            again = await coord.get_template(10)
            assert again.payload == first.payload
        assert client.fetch_calls == 1


class TestAtMostOnceFetch:
    async def test_concurrent_processes_fetch_once(self, store):
        client = FakeNodeClient()
        client.fetch_delay = 0.05
        processes = [coordinator(client, store, f"proc-{i}") for i in range(5)]

        templates = await asyncio.gather(*(p.get_template(500) for p in processes))

        assert client.fetch_calls == 1
        assert len({t.payload for t in templates}) == 1
        assert templates[0].height == 500
        assert len(templates[0].transactions) == 2
        record = await store.get_record(500)
        assert record.payload == templates[0].payload
        assert record.owner in {f"proc-{i}" for i in range(5)}

    async def test_loser_waits_for_winner_payload(self, memory_store):
        client = FakeNodeClient()
        client.fetch_delay = 0.05
        a = coordinator(client, memory_store, "A")
        b = coordinator(client, memory_store, "B")

        task_a = asyncio.ensure_future(a.get_template(500))
        await asyncio.sleep(0.01)  # let A take the lock
        record = await memory_store.get_record(500)
        assert record.is_locked and record.owner == "A"

        result_b = await b.get_template(500)
        result_a = await task_a
        assert result_b.payload == result_a.payload
        assert a.fetch_attempts == 1
        assert b.fetch_attempts == 0

    async def test_fixed_request_parameters(self, memory_store):
        client = FakeNodeClient()
        await coordinator(client, memory_store, "p1").get_template(1)
        assert client.fetch_params == [(TEMPLATE_RULES, TEMPLATE_MODE, TEMPLATE_CAPABILITIES)]
        assert TEMPLATE_RULES == ["segwit"]
        assert TEMPLATE_MODE == "template"
        assert TEMPLATE_CAPABILITIES == ["serverlist", "proposal"]

    async def test_same_process_callers_share_one_fetch(self, memory_store):
        client = FakeNodeClient()
        client.fetch_delay = 0.02
        coord = coordinator(client, memory_store)
        templates = await asyncio.gather(*(coord.get_template(8) for _ in range(4)))
        assert client.fetch_calls == 1
        assert len({t.payload for t in templates}) == 1


class TestFetchRetry:
    async def test_lock_holder_retries_until_node_answers(self, memory_store):
        client = FakeNodeClient(templates=[rpc_error(), rpc_error(), make_template(3)])
        template = await coordinator(client, memory_store, "p1").get_template(20)
        assert client.fetch_calls == 3
        assert template.raw["marker"] == 3
        assert (await memory_store.get_record(20)).payload == template.payload

    async def test_gives_up_after_ceiling(self, memory_store):
        client = FakeNodeClient(templates=[rpc_error()] * 1000)
        coord = coordinator(client, memory_store, "p1", fetch_retry=fast_backoff(give_up_after=0.05))
        with pytest.raises(TemplateUnavailableError) as exc:
            await coord.get_template(21)
        assert exc.value.height == 21
        # Lock is left for a later take-over, never a payload
        record = await memory_store.get_record(21)
        assert record.is_locked

    async def test_waiter_gives_up_after_ceiling(self, memory_store):
        await memory_store.create_lock(22, "slow")
        client = FakeNodeClient()
        coord = coordinator(client, memory_store, "p1", wait_retry=fast_backoff(give_up_after=0.05))
        with pytest.raises(TemplateUnavailableError):
            await coord.get_template(22)
        assert client.fetch_calls == 0


class TestLease:
    async def test_expired_lease_is_taken_over(self, memory_store):
        await memory_store.create_lock(40, "crashed")
        memory_store.records[40].acquired_at = time.time() - 120
        client = FakeNodeClient()

        template = await coordinator(client, memory_store, "p2", lock_ttl=30).get_template(40)
        assert client.fetch_calls == 1
        record = await memory_store.get_record(40)
        assert record.owner == "p2"
        assert record.payload == template.payload

    async def test_live_lease_is_respected(self, memory_store):
        await memory_store.create_lock(41, "busy")
        client = FakeNodeClient()
        coord = coordinator(client, memory_store, "p2", lock_ttl=30)
        task = asyncio.ensure_future(coord.get_template(41))
        await asyncio.sleep(0.05)
        assert not task.done()
        assert client.fetch_calls == 0

        payload = json.dumps(make_template(99))
        assert await memory_store.save_record(41, payload)
        template = await asyncio.wait_for(task, timeout=1)
        assert template.payload == payload

    async def test_holder_that_lost_lease_returns_persisted_payload(self, memory_store):
        client = FakeNodeClient(templates=[rpc_error()])
        coord = coordinator(client, memory_store, "old")
        await memory_store.create_lock(42, "old")
        # Another process takes over and finishes first
        rec = await memory_store.get_record(42)
        assert await memory_store.take_over_lock(42, "new", rec.owner, rec.acquired_at)
        winner = json.dumps(make_template(5))
        await memory_store.save_record(42, winner)

        template = await coord._fetch_and_save(42)
        assert template.payload == winner


class TestSingleInstance:
    async def test_no_identity_fetches_directly(self, memory_store):
        client = FakeNodeClient()
        coord = coordinator(client, memory_store)
        template = await coord.get_template(60)
        assert client.fetch_calls == 1
        record = await memory_store.get_record(60)
        assert record.owner is None
        assert record.payload == template.payload

    async def test_no_identity_waits_on_foreign_lock(self, memory_store):
        await memory_store.create_lock(61, "other")
        client = FakeNodeClient()
        coord = coordinator(client, memory_store)
        task = asyncio.ensure_future(coord.get_template(61))
        await asyncio.sleep(0.03)
        payload = json.dumps(make_template(1))
        await memory_store.save_record(61, payload)
        assert (await asyncio.wait_for(task, timeout=1)).payload == payload
        assert client.fetch_calls == 0


class TestInflight:
    async def test_failure_after_caller_cancelled_is_retrieved(self, memory_store):
        loop = asyncio.get_running_loop()
        reported = []
        previous = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            client = FakeNodeClient(templates=[rpc_error()] * 1000)
            coord = coordinator(
                client, memory_store, "p1", fetch_retry=fast_backoff(give_up_after=0.05)
            )
            caller = asyncio.ensure_future(coord.get_template(21))
            await asyncio.sleep(0.01)
            caller.cancel()
            await asyncio.gather(caller, return_exceptions=True)

            # The shared resolution keeps running and fails with nobody awaiting it
            await asyncio.sleep(0.15)
            gc.collect()
            await asyncio.sleep(0)
            assert 21 not in coord._inflight
            assert not [c for c in reported if "never retrieved" in c.get("message", "")]
        finally:
            loop.set_exception_handler(previous)
