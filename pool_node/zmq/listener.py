import asyncio
import zmq
import zmq.asyncio
from zmq.utils.monitor import parse_monitor_message
from typing import Callable
import logging

MONITORED_EVENTS = (
    zmq.EVENT_CONNECTED
    | zmq.EVENT_CONNECT_DELAYED
    | zmq.EVENT_CONNECT_RETRIED
    | zmq.EVENT_DISCONNECTED
)


class ZMQListener:
    """
    ZeroMQ listener for node block announcements.

    Subscribes to one topic (``rawblock`` by default) and awaits the
    callback for every message on it. The payload is not inspected.
    Reconnection is left to the ZMQ transport; a socket monitor logs the
    connect / retry transitions.
    """

    max_consecutive_errors = 5
    error_backoff = 0.5  # seconds per consecutive error, capped at 5

    def __init__(
        self,
        name: str,
        zmq_endpoint: str,
        on_block_callback: Callable,
        topic: bytes = b"rawblock",
    ):
        """
        Initialize ZMQ listener.

        Args:
            name: Human-readable name for this listener (e.g., "BTC")
            zmq_endpoint: ZMQ endpoint URL (e.g., "tcp://127.0.0.1:28332")
            on_block_callback: Async function called with no arguments per announcement
            topic: ZMQ topic to subscribe to
        """
        self.name = name
        self.zmq_endpoint = zmq_endpoint
        self.on_block_callback = on_block_callback
        self.topic = topic
        self.context = None
        self.socket = None
        self.monitor = None
        self.connected = False
        self.messages_received = 0
        self.logger = logging.getLogger(f"ZMQ-{name}")
        self._running = False
        self._task = None
        self._monitor_task = None

    async def start(self):
        """Start listening for ZMQ block announcements"""
        if self._running:
            self.logger.warning(f"{self.name} ZMQ listener already running")
            return

        try:
            self.context = zmq.asyncio.Context()
            self.socket = self.context.socket(zmq.SUB)
            self.socket.setsockopt(zmq.SUBSCRIBE, self.topic)

            self.socket.setsockopt(zmq.RCVTIMEO, 5000)  # 5 second receive timeout
            self.socket.setsockopt(zmq.LINGER, 1000)  # 1 second linger on close
            self.socket.setsockopt(zmq.RECONNECT_IVL, 1000)
            self.socket.setsockopt(zmq.RECONNECT_IVL_MAX, 10000)
            self.socket.setsockopt(zmq.CONNECT_TIMEOUT, 1000)

            # Monitor must be attached before connect to see the first attempt
            self.monitor = self.socket.get_monitor_socket(MONITORED_EVENTS)
            self.socket.connect(self.zmq_endpoint)
            self.logger.info(
                f"Subscribed to '{self.topic.decode()}' on {self.zmq_endpoint}"
            )
            self._running = True

            self._monitor_task = asyncio.create_task(self._monitor_loop())
            self._task = asyncio.create_task(self._listen_loop())
            await self._task
            if self._running:
                # Loop gave up on its own; do not leak the socket or context
                await self.stop()

        except Exception as e:
            self.logger.error(f"Failed to start {self.name} ZMQ listener: {e}")
            await self.stop()
            raise

    async def _monitor_loop(self):
        """Log connection transitions reported by the socket monitor"""
        while self._running and self.monitor is not None:
            try:
                frames = await self.monitor.recv_multipart()
            except zmq.ZMQError:
                break
            event = parse_monitor_message(frames)["event"]
            if event == zmq.EVENT_CONNECTED:
                self.connected = True
                self.logger.info(f"{self.name} ZMQ connected")
            elif event in (zmq.EVENT_CONNECT_RETRIED, zmq.EVENT_CONNECT_DELAYED):
                self.logger.warning(f"{self.name} ZMQ unable to connect, retrying")
            elif event == zmq.EVENT_DISCONNECTED:
                self.connected = False
                self.logger.warning(f"{self.name} ZMQ disconnected, reconnecting")

    async def _listen_loop(self):
        """Main listening loop for ZMQ messages"""
        consecutive_errors = 0
        max_consecutive_errors = self.max_consecutive_errors

        while self._running:
            if not self.socket:
                break
            try:
                # Multipart message: [topic, body, sequence]
                parts = await self.socket.recv_multipart()
                if not parts or parts[0] != self.topic:
                    self.logger.debug(
                        f"Ignoring {self.name} ZMQ message with topic: {parts[:1]}"
                    )
                    continue

                self.messages_received += 1
                consecutive_errors = 0
                self.logger.info(f"New {self.name} block announced")

                try:
                    await self.on_block_callback()
                except Exception as callback_error:
                    self.logger.error(
                        f"Error in {self.name} block callback: {callback_error}"
                    )

            except zmq.Again:
                # Receive timeout - normal when no blocks arrive
                continue

            except zmq.ZMQError as e:
                consecutive_errors += 1
                if consecutive_errors >= max_consecutive_errors:
                    self.logger.error(
                        f"{self.name} ZMQ listener: Too many consecutive errors ({consecutive_errors}), stopping"
                    )
                    break
                self.logger.warning(
                    f"{self.name} ZMQ error (attempt {consecutive_errors}/{max_consecutive_errors}): {e}"
                )
                await asyncio.sleep(min(consecutive_errors * self.error_backoff, 5.0))

        self.logger.info(f"{self.name} ZMQ listening loop ended")

    async def stop(self):
        """Stop the ZMQ listener gracefully"""
        if not self._running and self.socket is None and self.context is None:
            return
        self.logger.info(f"Stopping {self.name} ZMQ listener...")
        self._running = False

        current = asyncio.current_task()
        for task in (self._task, self._monitor_task):
            if task and not task.done() and task is not current:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self.socket:
            if self.monitor is not None:
                self.socket.disable_monitor()
                self.monitor.close()
                self.monitor = None
            self.socket.close()
            self.socket = None

        if self.context:
            self.context.term()
            self.context = None

        self.logger.info(f"{self.name} ZMQ listener stopped")

    @property
    def is_running(self) -> bool:
        """Check if the listener is currently running"""
        return bool(self._running and self._task and not self._task.done())

    def __repr__(self):
        return f"ZMQListener(name='{self.name}', endpoint='{self.zmq_endpoint}', running={self._running})"
