"""
Test configuration and fixtures for Bemfa MCP gateway tests.
"""
import asyncio
import json
import os
from typing import Any, Dict, List

import pytest

from bemfa_mcp_gateway.bridge import BemfaGateway
from bemfa_mcp_gateway.connection_manager import BrokerConnectionManager
from bemfa_mcp_gateway.data_models import GatewayConfig
from bemfa_mcp_gateway.exceptions import BrokerConnectionError, PublishError
from bemfa_mcp_gateway.mqtt_manager import BrokerLink, LinkCloser
from bemfa_mcp_gateway.session_store import SessionStore


class FakeBrokerLink(BrokerLink):
    """In-memory broker link recording every call"""

    def __init__(self, broker, config, message_handler, disconnect_handler):
        super().__init__(config, message_handler, disconnect_handler)
        self.broker = broker
        self.connected = False
        self.closed = False
        self.subscriptions: List[str] = []
        self.published: List[tuple] = []

    async def connect(self):
        if self.broker.connect_delay:
            await asyncio.sleep(self.broker.connect_delay)
        if self.broker.fail_connect:
            raise BrokerConnectionError("Connection refused by broker")
        self.connected = True

    def subscribe(self, topic: str) -> bool:
        self.subscriptions.append(topic)
        return True

    async def publish(self, topic: str, payload: str):
        if self.broker.fail_publish:
            raise PublishError("socket closed")
        self.published.append((topic, payload))
        if self.broker.echo:
            self.broker.route(topic, payload.encode())

    async def close(self):
        self.connected = False
        self.closed = True

    def deliver(self, topic: str, payload: bytes):
        """Simulate the broker delivering a message to this link"""
        asyncio.get_running_loop().call_soon(self.message_handler, topic, payload)

    def drop(self, reason: str = "Unspecified error"):
        """Simulate an unexpected disconnect"""
        self.connected = False
        asyncio.get_running_loop().call_soon(self.disconnect_handler, reason)


class FakeBroker:
    """Hands out fake links and routes published messages to subscribers"""

    def __init__(self):
        self.links: List[FakeBrokerLink] = []
        self.fail_connect = False
        self.fail_publish = False
        self.connect_delay = 0.0
        self.echo = True

    def __call__(self, config, message_handler, disconnect_handler) -> FakeBrokerLink:
        link = FakeBrokerLink(self, config, message_handler, disconnect_handler)
        self.links.append(link)
        return link

    def live_links(self) -> List[FakeBrokerLink]:
        return [link for link in self.links if link.connected]

    def route(self, topic: str, payload: bytes):
        for link in self.live_links():
            if topic in link.subscriptions:
                link.deliver(topic, payload)


class RecordingChannel:
    """Stand-in notification channel that keeps what was sent"""

    def __init__(self):
        self.events: List[tuple] = []
        self.closed = False

    def send_event(self, event: str, data: str):
        if not self.closed:
            self.events.append((event, data))

    def send_message(self, message: Dict[str, Any]):
        self.send_event("message", json.dumps(message))

    def notify(self, method: str, params: Dict[str, Any]):
        self.send_message({"jsonrpc": "2.0", "method": method, "params": params})

    def close(self):
        self.closed = True

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(data) for event, data in self.events if event == "message"]

    def notifications(self, method: str) -> List[Dict[str, Any]]:
        return [m["params"] for m in self.messages if m.get("method") == method]


@pytest.fixture
def gateway_config():
    """Gateway configuration with short timeouts for tests."""
    return GatewayConfig(
        bemfa_server="broker.test",
        bemfa_port=9501,
        heartbeat_interval=0.05,
        operation_timeout=0.5,
    )


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def session_store():
    return SessionStore(LinkCloser(timeout=1.0))


@pytest.fixture
def connection_manager(gateway_config, fake_broker):
    return BrokerConnectionManager(gateway_config, link_factory=fake_broker)


@pytest.fixture
def make_session(session_store):
    """Factory creating sessions with a recording channel."""
    def _make():
        return session_store.create(RecordingChannel())
    return _make


@pytest.fixture
def gateway(gateway_config, fake_broker):
    return BemfaGateway(gateway_config, link_factory=fake_broker)


@pytest.fixture
def mqtt_test_config():
    """Configuration for MQTT integration tests."""
    return {
        "host": os.getenv("MQTT_TEST_BROKER", "localhost"),
        "port": int(os.getenv("MQTT_TEST_PORT", "1883")),
        "username": os.getenv("MQTT_TEST_USERNAME"),
        "password": os.getenv("MQTT_TEST_PASSWORD"),
        "client_id": "test_bemfa_gateway",
    }


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")


def pytest_collection_modifyitems(config, items):
    """Add markers to tests based on file location."""
    for item in items:
        path = item.path.as_posix()
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
