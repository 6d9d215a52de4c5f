import asyncio
import logging
from typing import Optional

from ..utils.backoff import Backoff
from ..zmq.listener import ZMQListener

logger = logging.getLogger("ChainNotifier")


class ChainChangeNotifier:
    """
    Solicits mining-state refreshes whenever the chain may have moved.

    Push mode reacts to the node's ZMQ block announcements, poll mode runs
    on a fixed interval. Exactly one mode is active, chosen by whether a
    push endpoint is configured. The notifier never decides that the chain
    changed; MiningStateCache.refresh() does.
    """

    def __init__(
        self,
        cache,
        zmq_endpoint: str = "",
        poll_interval: float = 1.0,
        listener_factory=ZMQListener,
        restart_backoff: Optional[Backoff] = None,
    ):
        self.cache = cache
        self.zmq_endpoint = zmq_endpoint
        self.poll_interval = poll_interval
        self.listener_factory = listener_factory
        self.listener: Optional[ZMQListener] = None
        self.restart_backoff = restart_backoff or Backoff(initial=1.0, max_delay=30.0)
        self.refresh_count = 0
        self.restarts = 0
        self._running = False

    @property
    def mode(self) -> str:
        return "push" if self.zmq_endpoint else "poll"

    async def _refresh(self):
        self.refresh_count += 1
        try:
            await self.cache.refresh()
        except Exception as e:
            logger.error("Mining state refresh failed: %s", e)

    async def run(self):
        self._running = True
        if self.mode == "push":
            await self._run_push()
        else:
            await self._run_poll()

    async def _run_push(self):
        logger.info("Using ZMQ block notifications from %s", self.zmq_endpoint)
        backoff = self.restart_backoff.clone()
        while self._running:
            self.listener = self.listener_factory(
                name="NODE",
                zmq_endpoint=self.zmq_endpoint,
                on_block_callback=self._refresh,
            )
            listen_task = asyncio.create_task(self.listener.start())
            # Prime the cache; the first announcement may be a long way off,
            # and blocks may have been missed while the listener was down
            await self._refresh()
            await asyncio.wait([listen_task])
            if not listen_task.cancelled() and listen_task.exception() is not None:
                logger.error("ZMQ listener failed: %s", listen_task.exception())

            # Release the socket and context before any restart
            await self.listener.stop()
            if not self._running:
                break
            if getattr(self.listener, "messages_received", 0):
                backoff = self.restart_backoff.clone()
            self.restarts += 1
            delay = backoff.next_delay()
            logger.warning("ZMQ listener ended, restarting in %.1fs", delay)
            await asyncio.sleep(delay)

    async def _run_poll(self):
        logger.info("Polling mining info every %.3fs", self.poll_interval)
        loop = asyncio.get_running_loop()
        next_run = loop.time()
        while self._running:
            await self._refresh()
            # Fixed period: the refresh duration does not push the schedule back
            next_run += self.poll_interval
            delay = next_run - loop.time()
            if delay < 0:
                skipped = int(-delay // self.poll_interval) + 1
                next_run += skipped * self.poll_interval
                delay = next_run - loop.time()
            await asyncio.sleep(delay)

    async def stop(self):
        self._running = False
        if self.listener is not None:
            await self.listener.stop()
