import asyncio
import logging
import time
from typing import Optional

from ..errors import MiningStateUnavailable, NodeRPCError
from .broadcast import LatestValueBroadcast
from .models import MiningState, StaleSignal

logger = logging.getLogger("MiningState")


class MiningStateCache:
    """
    Holds the last known mining state and publishes height increases.

    ``new_state`` carries a MiningState each time the node reports a height
    strictly above the cached one. ``stale`` carries a StaleSignal once
    ``stale_after`` consecutive refresh cycles could not reach the node.
    """

    def __init__(
        self,
        client,
        retry_attempts: int = 5,
        retry_interval: float = 0.1,
        stale_after: int = 3,
    ):
        self.client = client
        self.retry_attempts = max(1, retry_attempts)
        self.retry_interval = retry_interval
        self.stale_after = max(1, stale_after)
        self.new_state: LatestValueBroadcast[MiningState] = LatestValueBroadcast("new_state")
        self.stale: LatestValueBroadcast[StaleSignal] = LatestValueBroadcast("stale")
        self._height: Optional[int] = None
        self._current: Optional[MiningState] = None
        self._last_reported_height: Optional[int] = None
        self._consecutive_failures = 0
        self._failing_since: Optional[float] = None
        self._is_stale = False
        self._lock = asyncio.Lock()

    @property
    def height(self) -> Optional[int]:
        return self._height

    @property
    def current(self) -> Optional[MiningState]:
        return self._current

    @property
    def is_stale(self) -> bool:
        return self._is_stale

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def query_mining_state(self) -> MiningState:
        """Ask the node for its mining state, retrying a bounded number of times."""
        last_error: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            await asyncio.sleep(self.retry_interval)
            try:
                info = await self.client.query_mining_state()
                state = MiningState.from_rpc(info)
            except (NodeRPCError, ValueError) as e:
                last_error = e
                logger.error(
                    "RETRY - getmininginfo (%d/%d): %s", attempt, self.retry_attempts, e
                )
                continue

            if state.height != self._last_reported_height:
                self._last_reported_height = state.height
                logger.debug("getMiningInfo: block height %d", state.height)
            return state

        raise MiningStateUnavailable(self.retry_attempts, last_error)

    async def refresh(self) -> Optional[MiningState]:
        """
        Re-read the node's mining state and publish it if the height increased.

        Returns the published state, or None when nothing was published.
        """
        async with self._lock:
            try:
                state = await self.query_mining_state()
            except MiningStateUnavailable as e:
                await self._record_failure(e)
                return None

            if self._is_stale:
                logger.warning(
                    "Node reachable again after %d failed refresh cycles",
                    self._consecutive_failures,
                )
            self._consecutive_failures = 0
            self._failing_since = None
            self._is_stale = False

            if self._height is not None and state.height <= self._height:
                return None

            logger.info("block height change: %s -> %d", self._height, state.height)
            self._height = state.height
            self._current = state
            await self.new_state.publish(state)
            return state

    async def _record_failure(self, error: MiningStateUnavailable):
        self._consecutive_failures += 1
        if self._failing_since is None:
            self._failing_since = time.time()
        logger.warning(
            "Mining state refresh produced no update (%d consecutive failures)",
            self._consecutive_failures,
        )
        if not self._is_stale and self._consecutive_failures >= self.stale_after:
            self._is_stale = True
            signal = StaleSignal(
                consecutive_failures=self._consecutive_failures,
                since=self._failing_since,
                last_error=str(error.last_error or error),
            )
            logger.error(
                "Mining state is stale: node unreachable for %d refresh cycles (%s)",
                signal.consecutive_failures,
                signal.last_error,
            )
            await self.stale.publish(signal)
