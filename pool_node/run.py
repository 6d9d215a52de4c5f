import asyncio
import logging
from dataclasses import dataclass

from .config import Settings
from .db.store import InMemoryTemplateStore, SqliteTemplateStore, TemplateStore
from .errors import NodeRPCError, TemplateUnavailableError
from .logging_setup import setup_logging
from .rpc.node import NodeClient
from .state.mining import MiningStateCache
from .state.notifier import ChainChangeNotifier
from .state.submission import SubmissionGateway
from .state.template import TemplateCoordinator
from .utils.backoff import Backoff

logger = logging.getLogger("Pool-Node")


@dataclass
class Services:
    client: NodeClient
    store: TemplateStore
    cache: MiningStateCache
    coordinator: TemplateCoordinator
    gateway: SubmissionGateway
    notifier: ChainChangeNotifier


def build_services(settings: Settings, http, store: TemplateStore | None = None) -> Services:
    client = NodeClient(http, settings.node_url, timeout=settings.rpc_timeout)
    if store is None:
        if settings.enable_database:
            store = SqliteTemplateStore(settings.database_path)
        else:
            store = InMemoryTemplateStore()
    cache = MiningStateCache(
        client,
        retry_attempts=settings.mining_info_retries,
        retry_interval=settings.mining_info_retry_interval,
        stale_after=settings.mining_info_stale_after,
    )
    coordinator = TemplateCoordinator(
        client,
        store,
        process_id=settings.process_id or None,
        fetch_retry=Backoff(
            initial=0.1,
            max_delay=settings.template_retry_max_delay,
            give_up_after=settings.template_fetch_give_up,
        ),
        wait_retry=Backoff(
            initial=0.1,
            factor=1.5,
            max_delay=min(0.5, settings.template_retry_max_delay),
            give_up_after=settings.template_wait_give_up,
        ),
        lock_ttl=settings.template_lock_ttl,
    )
    notifier = ChainChangeNotifier(
        cache,
        zmq_endpoint=settings.zmq_endpoint,
        poll_interval=settings.poll_interval,
    )
    return Services(
        client=client,
        store=store,
        cache=cache,
        coordinator=coordinator,
        gateway=SubmissionGateway(client),
        notifier=notifier,
    )


async def probe_node(client: NodeClient):
    """Startup reachability check. Failure is logged, never fatal."""
    try:
        await client.query_rpc_info()
        logger.info("Node RPC connected (%r)", client)
    except NodeRPCError as e:
        logger.error("Could not reach RPC host: %s", e)


async def prefetch_templates(services: Services):
    """Resolve the template for every new height as soon as it is published."""
    async for state in services.cache.new_state.subscribe():
        try:
            await services.coordinator.get_template(state.height)
        except TemplateUnavailableError as e:
            logger.error("Template prefetch failed: %s", e)
        except Exception as e:
            # A store or parse failure for one height must not end prefetching
            logger.exception("Template prefetch for height %d crashed: %s", state.height, e)


async def watch_stale(services: Services):
    async for signal in services.cache.stale.subscribe():
        logger.critical(
            "Node unreachable for %d refresh cycles, mining state is stale: %s",
            signal.consecutive_failures,
            signal.last_error,
        )


def run_with_settings(settings: Settings):
    logger = setup_logging(settings.log_level)
    logger.info("Starting pool node sync")

    if settings.push_mode:
        logger.debug("ZMQ enabled - %s", settings.zmq_endpoint)
    else:
        logger.info("ZMQ disabled - polling every %.3fs", settings.poll_interval)
    if not settings.process_id:
        logger.info("No process id configured, template fetches are not coordinated")

    async def main():
        from aiohttp import ClientSession

        async with ClientSession() as http:
            services = build_services(settings, http)
            await services.store.init()
            probe_task = asyncio.create_task(probe_node(services.client))

            async def periodic_cleanup():
                while True:
                    try:
                        await asyncio.sleep(3600)
                        await services.store.cleanup(settings.template_keep_heights)
                    except Exception as e:
                        logger.error("Periodic template cleanup failed: %s", e)

            tasks = [
                asyncio.create_task(services.notifier.run()),
                asyncio.create_task(prefetch_templates(services)),
                asyncio.create_task(watch_stale(services)),
                asyncio.create_task(periodic_cleanup()),
            ]

            if settings.enable_api:
                import uvicorn
                from .web.api import app, set_services

                logger.info("Starting status API on port %d", settings.api_port)
                set_services(services)
                config = uvicorn.Config(
                    app, host="0.0.0.0", port=settings.api_port, log_level="warning"
                )
                server = uvicorn.Server(config)
                tasks.append(asyncio.create_task(server.serve()))

            # Wait for any task to complete or fail
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.exception():
                    logger.critical("Task failed: %s", task.exception())
            if not probe_task.done():
                probe_task.cancel()

    asyncio.run(main())


def run_from_env():
    run_with_settings(Settings())
