"""
Integration tests against a real MQTT broker.

Set MQTT_TEST_BROKER / MQTT_TEST_PORT to point at a broker; the tests skip
when none is reachable.
"""
import asyncio
import uuid

import pytest
import pytest_asyncio

from bemfa_mcp_gateway.connection_manager import BrokerConnectionManager
from bemfa_mcp_gateway.data_models import ConnectionState, GatewayConfig
from bemfa_mcp_gateway.exceptions import BrokerConnectionError
from bemfa_mcp_gateway.mqtt_manager import LinkCloser
from bemfa_mcp_gateway.session_store import SessionStore


class CollectingChannel:
    """Keeps notifications pushed to a session."""

    def __init__(self):
        self.notifications = []
        self.closed = False

    def notify(self, method, params):
        self.notifications.append((method, params))

    def close(self):
        self.closed = True


@pytest.mark.integration
class TestMQTTIntegration:
    """Integration tests for the paho-backed connection manager."""

    @pytest_asyncio.fixture
    async def broker_setup(self, mqtt_test_config):
        config = GatewayConfig(
            bemfa_server=mqtt_test_config["host"],
            bemfa_port=mqtt_test_config["port"],
            operation_timeout=3.0,
        )
        closer = LinkCloser(timeout=6.0)
        store = SessionStore(closer)
        manager = BrokerConnectionManager(config, closer=closer)
        yield store, manager
        for session_id in store.session_ids():
            store.remove(session_id)
        await closer.wait_closed()

    def light_arguments(self, mqtt_test_config):
        arguments = {
            "clientId": f"test_bemfa_{uuid.uuid4().hex[:8]}",
            "topic": f"test/bemfa/{uuid.uuid4().hex[:8]}",
        }
        if mqtt_test_config.get("username"):
            arguments["username"] = mqtt_test_config["username"]
            arguments["password"] = mqtt_test_config["password"]
        return arguments

    async def connect_or_skip(self, manager, session):
        try:
            await manager.connect(session)
        except BrokerConnectionError as e:
            pytest.skip(f"MQTT broker not available: {e}")

    @pytest.mark.asyncio
    async def test_publish_is_echoed_to_session(self, broker_setup, mqtt_test_config):
        store, manager = broker_setup
        session = store.create(CollectingChannel())
        manager.configure(session, self.light_arguments(mqtt_test_config))
        await self.connect_or_skip(manager, session)
        assert session.state is ConnectionState.CONNECTED

        # Give the subscription a moment to take effect
        await asyncio.sleep(0.3)
        await manager.publish(session, "on")

        for _ in range(50):
            if session.channel.notifications:
                break
            await asyncio.sleep(0.05)

        method, params = session.channel.notifications[0]
        assert method == "notifications/message"
        assert params["topic"] == session.config.topic
        assert params["payload"] == "on"

    @pytest.mark.asyncio
    async def test_disconnect_and_reconnect(self, broker_setup, mqtt_test_config):
        store, manager = broker_setup
        session = store.create(CollectingChannel())
        manager.configure(session, self.light_arguments(mqtt_test_config))
        await self.connect_or_skip(manager, session)

        await manager.disconnect(session)
        assert session.state is ConnectionState.DISCONNECTED

        await manager.connect(session)
        assert session.state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_unreachable_broker_fails_fast(self, broker_setup):
        store, manager = broker_setup
        session = store.create(CollectingChannel())
        manager.configure(session, {"clientId": "test_bemfa", "topic": "t", "host": "127.0.0.1", "port": 1})

        with pytest.raises(BrokerConnectionError):
            await manager.connect(session)
        assert session.state is ConnectionState.DISCONNECTED
