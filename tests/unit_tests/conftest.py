import asyncio
from collections import deque

import pytest

from pool_node.db.store import InMemoryTemplateStore, SqliteTemplateStore
from pool_node.errors import NodeRPCError
from pool_node.utils.backoff import Backoff


class FakeNodeClient:
    """Scripted stand-in for NodeClient. Exceptions in a script are raised."""

    def __init__(self, mining_infos=(), templates=(), submit_responses=()):
        self.mining_infos = deque(mining_infos)
        self.templates = deque(templates)
        self.submit_responses = deque(submit_responses)
        self.mining_calls = 0
        self.fetch_calls = 0
        self.fetch_params = []
        self.submitted = []
        self.fetch_delay = 0.0

    async def query_rpc_info(self):
        return {"active_commands": []}

    async def query_mining_state(self):
        self.mining_calls += 1
        item = self.mining_infos.popleft() if len(self.mining_infos) > 1 else self.mining_infos[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return {"blocks": item, "difficulty": 1.5, "networkhashps": 1e9, "chain": "regtest"}
        return item

    async def fetch_template(self, rules, mode, capabilities):
        self.fetch_calls += 1
        self.fetch_params.append((rules, mode, capabilities))
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.templates:
            item = self.templates.popleft()
            if isinstance(item, Exception):
                raise item
            return item
        return make_template(self.fetch_calls)

    async def submit_block(self, block_hex):
        self.submitted.append(block_hex)
        item = self.submit_responses.popleft()
        if isinstance(item, Exception):
            raise item
        return item


def make_template(marker, tx_count=2):
    return {
        "version": 536870912,
        "previousblockhash": "00" * 32,
        "bits": "207fffff",
        "coinbasevalue": 5000000000,
        "transactions": [{"txid": f"{marker:02x}{i:062x}", "data": "00"} for i in range(tx_count)],
        "marker": marker,
    }


def fast_backoff(give_up_after=0.0):
    return Backoff(initial=0.005, factor=2.0, max_delay=0.02, jitter=0.0, give_up_after=give_up_after)


def rpc_error(message="connection refused"):
    return NodeRPCError(message, method="test")


@pytest.fixture
def memory_store():
    return InMemoryTemplateStore()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryTemplateStore()
    sqlite = SqliteTemplateStore(tmp_path / "templates.db")
    await sqlite.init()
    return sqlite
