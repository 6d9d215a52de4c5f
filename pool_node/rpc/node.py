"""
Bitcoin-style node JSON-RPC interface.
"""
import asyncio
import json

import aiohttp

from ..errors import NodeRPCError

TEMPLATE_RULES = ["segwit"]
TEMPLATE_MODE = "template"
TEMPLATE_CAPABILITIES = ["serverlist", "proposal"]


async def _call(session, node_url: str, method: str, params: list, timeout=None):
    data = {
        "jsonrpc": "1.0",
        "id": "pool-node",
        "method": method,
        "params": params,
    }
    kwargs = {"timeout": timeout} if timeout is not None else {}
    async with session.post(node_url, data=json.dumps(data), **kwargs) as resp:
        # bitcoind answers RPC errors with HTTP 500 and a JSON body
        return await resp.json(content_type=None)


async def getrpcinfo(session, node_url: str, timeout=None):
    """Query RPC server details, used as a reachability probe."""
    return await _call(session, node_url, "getrpcinfo", [], timeout)


async def getmininginfo(session, node_url: str, timeout=None):
    """Get mining-related information (height, difficulty, hash rate)."""
    return await _call(session, node_url, "getmininginfo", [], timeout)


async def getblocktemplate(
    session, node_url: str, rules: list, mode: str, capabilities: list, timeout=None
):
    """Get a block template from the node."""
    template_request = {
        "rules": rules,
        "mode": mode,
        "capabilities": capabilities,
    }
    return await _call(session, node_url, "getblocktemplate", [template_request], timeout)


async def submitblock(session, node_url: str, block_hex: str, timeout=None):
    """Submit a solved block to the network."""
    return await _call(session, node_url, "submitblock", [block_hex], timeout)


class NodeClient:
    """
    Thin adapter over the RPC functions.

    Unwraps the JSON-RPC envelope and turns transport failures and
    ``error`` members into NodeRPCError so callers deal with one failure type.
    """

    def __init__(self, session, node_url: str, timeout: float = 10.0):
        self.session = session
        self.node_url = node_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _result(self, method: str, coro):
        try:
            js = await coro
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NodeRPCError(f"{method} transport failure: {e!r}", method=method) from e
        except ValueError as e:
            # Body was not JSON (proxy error page, auth failure, ...)
            raise NodeRPCError(f"{method} returned invalid JSON: {e}", method=method) from e

        if not isinstance(js, dict):
            raise NodeRPCError(f"{method} returned unexpected response: {js!r}", method=method)
        err = js.get("error")
        if err:
            if isinstance(err, dict):
                raise NodeRPCError(
                    err.get("message", str(err)), code=err.get("code"), method=method
                )
            raise NodeRPCError(str(err), method=method)
        return js.get("result")

    async def query_rpc_info(self):
        return await self._result(
            "getrpcinfo", getrpcinfo(self.session, self.node_url, self.timeout)
        )

    async def query_mining_state(self) -> dict:
        result = await self._result(
            "getmininginfo", getmininginfo(self.session, self.node_url, self.timeout)
        )
        if not isinstance(result, dict):
            raise NodeRPCError(f"getmininginfo returned {result!r}", method="getmininginfo")
        return result

    async def fetch_template(
        self,
        rules=TEMPLATE_RULES,
        mode=TEMPLATE_MODE,
        capabilities=TEMPLATE_CAPABILITIES,
    ) -> dict:
        result = await self._result(
            "getblocktemplate",
            getblocktemplate(
                self.session, self.node_url, rules, mode, capabilities, self.timeout
            ),
        )
        if not isinstance(result, dict):
            raise NodeRPCError(
                f"getblocktemplate returned {result!r}", method="getblocktemplate"
            )
        return result

    async def submit_block(self, block_hex: str):
        """Returns the node's raw result: None on acceptance, else a reason string."""
        return await self._result(
            "submitblock", submitblock(self.session, self.node_url, block_hex, self.timeout)
        )

    def __repr__(self):
        # Never leak credentials embedded in the URL
        host = self.node_url.rsplit("@", 1)[-1]
        return f"NodeClient(node='{host}')"
