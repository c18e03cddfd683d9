"""
MQTT client management for the Bemfa MCP gateway.

Each session owns one broker link. ``MQTTManager`` wraps a paho-mqtt client
whose network loop runs on its own thread; every paho callback is marshalled
onto the asyncio event loop so session state is only touched from the loop.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional, Set

import paho.mqtt.client as mqtt

from .data_models import BrokerConfig
from .exceptions import BrokerConnectionError, PublishError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]
DisconnectHandler = Callable[[str], None]


class BrokerLink(ABC):
    """Capability interface of a single broker connection.

    ``message_handler(topic, payload)`` and ``disconnect_handler(reason)``
    are always invoked on the event loop thread. The disconnect handler only
    fires for disconnects the link did not request through ``close``.
    """

    def __init__(self, config: BrokerConfig,
                 message_handler: MessageHandler,
                 disconnect_handler: DisconnectHandler):
        self.config = config
        self.message_handler = message_handler
        self.disconnect_handler = disconnect_handler

    @abstractmethod
    async def connect(self):
        """Open the connection; returns once the broker acknowledged it"""

    @abstractmethod
    def subscribe(self, topic: str) -> bool:
        """Request a subscription; the outcome is only logged"""

    @abstractmethod
    async def publish(self, topic: str, payload: str):
        """Publish a message; returns once it has been handed to the broker"""

    @abstractmethod
    async def close(self):
        """Close the connection and release its resources"""


class LinkCloser:
    """Closes broker links without raising, and tracks closes left running
    in the background so shutdown can wait for them."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    async def close(self, link: BrokerLink):
        try:
            await asyncio.wait_for(link.close(), self.timeout)
        except Exception as e:
            logger.warning(f"Error closing broker connection for {link.config.client_id}: {e!r}")

    def close_in_background(self, link: BrokerLink):
        task = asyncio.ensure_future(self.close(link))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_closed(self):
        """Wait for background closes, including ones started while waiting"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class MQTTManager(BrokerLink):
    """paho-mqtt implementation of a broker link"""

    def __init__(self, config: BrokerConfig,
                 message_handler: MessageHandler,
                 disconnect_handler: DisconnectHandler,
                 keepalive: int = 60,
                 timeout: float = 5.0):
        super().__init__(config, message_handler, disconnect_handler)
        self.keepalive = keepalive
        self.timeout = timeout
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            clean_session=True,
        )

        if config.username:
            self.client.username_pw_set(config.username, config.password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.on_subscribe = self._on_subscribe
        self.client.on_log = self._on_log

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Future] = None
        self._closed_ack: Optional[asyncio.Future] = None
        self._connect_job: Optional[asyncio.Future] = None
        self._shutdown: Optional[asyncio.Future] = None
        self._closing = False
        self._loop_started = False

    async def connect(self):
        """Connect to the broker and wait for CONNACK"""
        self._loop = asyncio.get_running_loop()
        self._connack = self._loop.create_future()

        logger.info(f"Connecting to MQTT broker at {self.config.host}:{self.config.port} "
                    f"as {self.config.client_id}")
        # The blocking connect keeps running on its thread even if we are
        # cancelled; close() waits for it before tearing the socket down.
        self._connect_job = self._loop.run_in_executor(
            None, self.client.connect, self.config.host, self.config.port, self.keepalive
        )
        try:
            await asyncio.shield(self._connect_job)
        except (OSError, ValueError) as e:
            raise BrokerConnectionError(
                f"Failed to connect to {self.config.host}:{self.config.port}: {e}"
            ) from e

        if self._closing:
            raise BrokerConnectionError("Connection closed while connecting")
        self.client.loop_start()
        self._loop_started = True
        await self._connack

    def subscribe(self, topic: str) -> bool:
        """Subscribe to a topic"""
        result, mid = self.client.subscribe(topic, qos=0)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"Failed to subscribe to {topic}: {mqtt.error_string(result)}")
            return False
        logger.debug(f"Subscription to {topic} requested (mid={mid})")
        return True

    async def publish(self, topic: str, payload: str):
        """Publish a message and wait until paho has sent it"""
        info = self.client.publish(topic, payload, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, info.wait_for_publish, self.timeout)
        except (RuntimeError, ValueError) as e:
            raise PublishError(f"Failed to publish to {topic}: {e}") from e

        if not info.is_published():
            raise PublishError(f"Timed out publishing to {topic}")
        logger.debug(f"Published to {topic}: {payload}")

    async def close(self):
        """Disconnect from the broker and stop the network thread.

        The teardown runs as its own task: a caller that gives up waiting
        does not interrupt it, and every call waits on the same teardown.
        """
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._teardown())
        await asyncio.shield(self._shutdown)

    async def _teardown(self):
        self._closing = True
        loop = asyncio.get_running_loop()
        self._loop = self._loop or loop
        self._closed_ack = loop.create_future()

        if self._connack is not None and not self._connack.done():
            self._connack.set_exception(BrokerConnectionError("Connection closed before CONNACK"))
            self._connack.exception()

        job = self._connect_job
        if job is not None:
            if not job.done():
                logger.debug(f"Waiting for pending connect of {self.config.client_id} before closing")
                await asyncio.wait([job])
            if not self._loop_started and not job.cancelled() and job.exception() is None:
                # The socket was opened after connect() gave up; the network
                # loop is what writes DISCONNECT and closes it.
                self.client.loop_start()
                self._loop_started = True

        try:
            rc = self.client.disconnect()
            if rc == mqtt.MQTT_ERR_SUCCESS and self._loop_started:
                try:
                    await asyncio.wait_for(self._closed_ack, self.timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"No disconnect acknowledgement from {self.config.host} "
                                   f"within {self.timeout}s")
        finally:
            if self._loop_started:
                await loop.run_in_executor(None, self.client.loop_stop)
        logger.info(f"Closed MQTT connection for {self.config.client_id}")

    def _on_log(self, client, userdata, level, buf):
        """MQTT client logging callback"""
        logger.debug(f"MQTT: {buf}")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self._loop.call_soon_threadsafe(self._handle_connack, reason_code)

    def _handle_connack(self, reason_code):
        if self._connack is None or self._connack.done():
            return
        if reason_code.is_failure:
            logger.error(f"Connection refused by broker: {reason_code}")
            self._connack.set_exception(
                BrokerConnectionError(f"Connection refused by broker: {reason_code}")
            )
        else:
            logger.info(f"Connected to MQTT broker at {self.config.host}:{self.config.port}")
            self._connack.set_result(True)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._handle_disconnect, str(reason_code))

    def _handle_disconnect(self, reason: str):
        if self._closing:
            if self._closed_ack is not None and not self._closed_ack.done():
                self._closed_ack.set_result(True)
            return

        if self._connack is not None and not self._connack.done():
            self._connack.set_exception(BrokerConnectionError(f"Disconnected before CONNACK: {reason}"))
            return

        logger.warning(f"Disconnected from MQTT broker (reason: {reason})")
        self.disconnect_handler(reason)

    def _on_message(self, client, userdata, msg):
        self._loop.call_soon_threadsafe(self.message_handler, msg.topic, msg.payload)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        failures = [rc for rc in reason_code_list if rc.is_failure]
        if failures:
            logger.error(f"Subscribe rejected by broker (mid={mid}): {failures[0]}")
        else:
            logger.info(f"Subscribed to {self.config.topic}")
