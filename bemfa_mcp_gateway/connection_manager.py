"""
Broker Connection Manager

Owns the per-session broker connection state machine
(disconnected -> connecting -> connected -> closing -> disconnected) and
routes inbound broker events back to the session they belong to.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from .data_models import BrokerConfig, ConnectionState, GatewayConfig, InboundMessage, LightCommand
from .exceptions import (
    BrokerConnectionError,
    NotConfiguredError,
    NotConnectedError,
    PublishError,
)
from .mqtt_manager import BrokerLink, DisconnectHandler, LinkCloser, MessageHandler, MQTTManager
from .session_store import Session
from .timezone_utils import utc_isoformat, utc_now

logger = logging.getLogger(__name__)

LinkFactory = Callable[[BrokerConfig, MessageHandler, DisconnectHandler], BrokerLink]


class BrokerConnectionManager:
    """Opens, uses and closes one broker connection per session"""

    def __init__(self, config: GatewayConfig,
                 link_factory: Optional[LinkFactory] = None,
                 closer: Optional[LinkCloser] = None):
        self.config = config
        self.timeout = config.operation_timeout
        self._link_factory = link_factory or self._default_link_factory
        # A link may itself spend operation_timeout waiting for its disconnect
        self.closer = closer or LinkCloser(timeout=2 * self.timeout)

    def _default_link_factory(self, broker_config: BrokerConfig,
                              message_handler: MessageHandler,
                              disconnect_handler: DisconnectHandler) -> BrokerLink:
        return MQTTManager(
            broker_config,
            message_handler,
            disconnect_handler,
            keepalive=self.config.keepalive,
            timeout=self.timeout,
        )

    def configure(self, session: Session, arguments: Dict[str, Any]) -> BrokerConfig:
        """Validate and store a broker configuration; the live connection is untouched"""
        broker_config = BrokerConfig.from_arguments(
            arguments, self.config.bemfa_server, self.config.bemfa_port
        )
        session.config = broker_config
        logger.info(f"Session {session.session_id} configured for "
                    f"{broker_config.host}:{broker_config.port}, topic {broker_config.topic}")
        return broker_config

    async def connect(self, session: Session) -> BrokerConfig:
        """Open a broker connection with the stored configuration.

        Any existing connection is closed first. Resolves once the broker
        acknowledged the connection; the topic subscription is issued but
        its outcome is only logged.
        """
        if session.config is None:
            raise NotConfiguredError()

        async with session.lock:
            if session.link is not None:
                previous = session.link
                session.link = None
                session.state = ConnectionState.DISCONNECTED
                logger.info(f"Closing previous broker connection of session {session.session_id}")
                await self.closer.close(previous)

            broker_config = session.config
            link: Optional[BrokerLink] = None

            def on_message(topic: str, payload: bytes):
                self._route_message(session, link, topic, payload)

            def on_disconnect(reason: str):
                self._handle_link_lost(session, link, reason)

            link = self._link_factory(broker_config, on_message, on_disconnect)
            session.link = link
            session.state = ConnectionState.CONNECTING

            try:
                await asyncio.wait_for(link.connect(), self.timeout)
            except asyncio.CancelledError:
                self._abandon(session, link)
                self.closer.close_in_background(link)
                raise
            except asyncio.TimeoutError:
                self._abandon(session, link)
                await self.closer.close(link)
                raise BrokerConnectionError(
                    f"Timed out connecting to {broker_config.host}:{broker_config.port} "
                    f"after {self.timeout}s"
                ) from None
            except BrokerConnectionError:
                self._abandon(session, link)
                await self.closer.close(link)
                raise
            except Exception as e:
                self._abandon(session, link)
                await self.closer.close(link)
                raise BrokerConnectionError(f"Connection failed: {e}") from e

            if session.closed or session.link is not link:
                await self.closer.close(link)
                raise BrokerConnectionError("Session closed while connecting")

            link.subscribe(broker_config.topic)
            session.active_config = broker_config
            session.state = ConnectionState.CONNECTED
            logger.info(f"Session {session.session_id} connected, topic {broker_config.topic}")
            return broker_config

    async def publish(self, session: Session, command: Any) -> LightCommand:
        """Send a light command on the session's active topic"""
        async with session.lock:
            if not session.connected:
                raise NotConnectedError()

            light_command = LightCommand.parse(command)
            topic = session.active_config.topic
            logger.info(f"Sending light control command {light_command.value} to {topic}")

            try:
                await asyncio.wait_for(session.link.publish(topic, light_command.value), self.timeout)
            except asyncio.TimeoutError:
                raise PublishError(f"Timed out publishing to {topic} after {self.timeout}s") from None
            except PublishError:
                raise
            except Exception as e:
                raise PublishError(f"Failed to publish to {topic}: {e}") from e
            return light_command

    async def disconnect(self, session: Session):
        """Close the live connection; the stored configuration is kept"""
        async with session.lock:
            if not session.connected:
                raise NotConnectedError()

            link = session.link
            session.state = ConnectionState.CLOSING
            try:
                await asyncio.wait_for(link.close(), self.timeout)
            except asyncio.TimeoutError:
                raise BrokerConnectionError(f"Timed out disconnecting after {self.timeout}s") from None
            except Exception as e:
                raise BrokerConnectionError(f"Disconnect failed: {e}") from e
            finally:
                if session.link is link:
                    session.link = None
                    session.state = ConnectionState.DISCONNECTED
            logger.info(f"Session {session.session_id} disconnected")

    def get_config(self, session: Session) -> Dict[str, Any]:
        """Configuration readback with secrets masked"""
        result = {
            "configured": session.config is not None,
            "config": session.config.masked() if session.config else None,
            "state": session.state.value,
            "connected": session.connected,
        }
        if session.connected:
            result["activeTopic"] = session.active_config.topic
        return result

    def _route_message(self, session: Session, link: BrokerLink, topic: str, payload: bytes):
        if session.closed or session.link is not link or session.state is not ConnectionState.CONNECTED:
            logger.debug(f"Dropping message on {topic} from stale connection")
            return

        message = InboundMessage.from_bytes(topic, payload)
        logger.info(f"Received message on {topic}: {message.payload}")
        session.channel.notify("notifications/message", message.to_params())

    def _handle_link_lost(self, session: Session, link: BrokerLink, reason: str):
        if session.link is not link or session.state is not ConnectionState.CONNECTED:
            return

        logger.warning(f"Session {session.session_id} lost its broker connection: {reason}")
        session.link = None
        session.state = ConnectionState.DISCONNECTED
        self.closer.close_in_background(link)
        session.channel.notify("notifications/brokerDisconnected", {
            "topic": link.config.topic,
            "reason": reason,
            "timestamp": utc_isoformat(utc_now()),
        })

    def _abandon(self, session: Session, link: BrokerLink):
        if session.link is link:
            session.link = None
            session.state = ConnectionState.DISCONNECTED

    async def wait_closed(self):
        """Wait for background link closes to finish"""
        await self.closer.wait_closed()
