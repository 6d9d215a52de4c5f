import asyncio
import json
import logging
from typing import Dict, Optional

from ..errors import NodeRPCError, TemplateUnavailableError
from ..rpc.node import TEMPLATE_CAPABILITIES, TEMPLATE_MODE, TEMPLATE_RULES
from ..utils.backoff import Backoff, GiveUp
from .models import TemplateRecord, WorkTemplate

logger = logging.getLogger("TemplateCoordinator")


class TemplateCoordinator:
    """
    Hands out the work template for a height, fetching it from the node at
    most once across every process that shares the template store.

    The process that creates the record for a height holds a lease on it and
    is the only one to call getblocktemplate. Everyone else polls the store
    until the payload appears. A lease older than ``lock_ttl`` may be taken
    over by a waiting process, so a crashed holder does not block the height
    forever.
    """

    def __init__(
        self,
        client,
        store,
        process_id: Optional[str] = None,
        fetch_retry: Optional[Backoff] = None,
        wait_retry: Optional[Backoff] = None,
        lock_ttl: float = 60.0,
    ):
        self.client = client
        self.store = store
        self.process_id = process_id or None
        self.fetch_retry = fetch_retry or Backoff()
        self.wait_retry = wait_retry or Backoff(max_delay=0.5)
        self.lock_ttl = lock_ttl
        self.fetch_attempts = 0
        self._inflight: Dict[int, asyncio.Task] = {}

    async def get_template(self, height: int) -> WorkTemplate:
        # Callers in this process share one resolution per height
        task = self._inflight.get(height)
        if task is None:
            task = asyncio.ensure_future(self._resolve(height))
            self._inflight[height] = task
            task.add_done_callback(lambda t, h=height: self._finished(h, t))
        template = await asyncio.shield(task)
        logger.info(
            "getblocktemplate tx count: %d (height %d)", len(template.transactions), height
        )
        return template

    def _finished(self, height: int, task: asyncio.Task):
        self._inflight.pop(height, None)
        # Retrieve the error here; every caller may have been cancelled already
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Template resolution for height %d failed: %s", height, task.exception())

    async def _resolve(self, height: int) -> WorkTemplate:
        record = await self.store.get_record(height)
        if record is not None and record.is_ready:
            return self._parse(record)

        if record is None:
            if self.process_id is None:
                # Single instance: nobody to coordinate with
                return await self._fetch_and_save(height)
            if await self.store.create_lock(height, self.process_id):
                logger.debug("Locked height %d for %s", height, self.process_id)
                return await self._fetch_and_save(height)
            logger.debug("Height %d locked by another process, waiting", height)

        return await self._wait_for_template(height)

    async def _fetch_and_save(self, height: int) -> WorkTemplate:
        backoff = self.fetch_retry.clone()
        while True:
            try:
                self.fetch_attempts += 1
                result = await self.client.fetch_template(
                    TEMPLATE_RULES, TEMPLATE_MODE, TEMPLATE_CAPABILITIES
                )
            except NodeRPCError as e:
                logger.error(
                    "RETRY - getblocktemplate (height %d, attempt %d): %s",
                    height,
                    backoff.attempts + 1,
                    e,
                )
                if self.process_id is not None and not await self.store.renew_lock(
                    height, self.process_id
                ):
                    # Lease was taken over, or the payload arrived meanwhile
                    logger.warning("Lost lock on height %d, waiting instead", height)
                    return await self._wait_for_template(height)
                try:
                    await backoff.sleep()
                except GiveUp as g:
                    raise TemplateUnavailableError(height, f"node fetch {g}") from e
                continue

            payload = json.dumps(result)
            if await self.store.save_record(height, payload):
                return WorkTemplate.from_payload(height, payload)

            # Someone else stored first; theirs is the one everybody sees
            record = await self.store.get_record(height)
            if record is not None and record.is_ready:
                return self._parse(record)
            raise TemplateUnavailableError(height, "record vanished while saving")

    async def _wait_for_template(self, height: int) -> WorkTemplate:
        backoff = self.wait_retry.clone()
        while True:
            try:
                await backoff.sleep()
            except GiveUp as g:
                raise TemplateUnavailableError(height, f"waiting for store {g}") from None

            record = await self.store.get_record(height)
            if record is not None and record.is_ready:
                logger.debug("Wait loop resolved for height %d", height)
                return self._parse(record)

            if self.process_id is None:
                if record is None:
                    return await self._fetch_and_save(height)
                continue

            if record is None:
                # Record pruned under us; compete for it again
                if await self.store.create_lock(height, self.process_id):
                    return await self._fetch_and_save(height)
            elif record.lease_expired(self.lock_ttl):
                if await self.store.take_over_lock(
                    height, self.process_id, record.owner, record.acquired_at
                ):
                    logger.warning(
                        "Took over expired lock on height %d from %s", height, record.owner
                    )
                    return await self._fetch_and_save(height)
            logger.debug("Waiting for template at height %d", height)

    def _parse(self, record: TemplateRecord) -> WorkTemplate:
        try:
            return WorkTemplate.from_payload(record.height, record.payload)
        except ValueError as e:
            raise TemplateUnavailableError(record.height, f"corrupt payload: {e}") from e
