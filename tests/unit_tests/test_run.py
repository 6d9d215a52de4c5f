import asyncio
import logging
import sqlite3

from conftest import FakeNodeClient, rpc_error
from pool_node.config import Settings
from pool_node.db.store import InMemoryTemplateStore
from pool_node.run import build_services, prefetch_templates, probe_node


class LockedOnceStore(InMemoryTemplateStore):
    """First read fails the way a busy SQLite file does."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    async def get_record(self, height):
        if self.failures:
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return await super().get_record(height)


class UnreachableNode(FakeNodeClient):
    async def query_rpc_info(self):
        raise rpc_error("connection refused")


def services_with(client, store):
    svc = build_services(Settings(), http=None, store=store)
    svc.cache.client = client
    svc.cache.retry_interval = 0
    svc.coordinator.client = client
    svc.gateway.client = client
    return svc


class TestPrefetch:
    async def test_store_error_does_not_end_prefetching(self, caplog):
        store = LockedOnceStore()
        svc = services_with(FakeNodeClient(mining_infos=[10, 11]), store)
        task = asyncio.ensure_future(prefetch_templates(svc))
        try:
            await asyncio.sleep(0)
            await svc.cache.refresh()
            for _ in range(50):
                await asyncio.sleep(0.01)
                if store.failures == 0:
                    break
            await svc.cache.refresh()

            record = None
            for _ in range(100):
                await asyncio.sleep(0.01)
                record = await store.get_record(11)
                if record is not None and record.is_ready:
                    break
            assert record is not None and record.is_ready
            assert not task.done()
            assert "database is locked" in caplog.text
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class TestProbeNode:
    async def test_failure_is_logged_not_raised(self, caplog):
        caplog.set_level(logging.INFO, logger="Pool-Node")
        await probe_node(UnreachableNode())
        assert "Could not reach RPC host" in caplog.text
        assert "connection refused" in caplog.text

    async def test_success_is_logged(self, caplog):
        caplog.set_level(logging.INFO, logger="Pool-Node")
        await probe_node(FakeNodeClient())
        assert "Node RPC connected" in caplog.text
        assert "Could not reach RPC host" not in caplog.text
