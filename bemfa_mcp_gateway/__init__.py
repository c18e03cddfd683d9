"""
Bemfa MCP Gateway

Exposes MCP tool calls over server-sent events and bridges every session to
its own MQTT connection on the Bemfa cloud broker for smart light control.
"""

__version__ = "1.0.0"

from .data_models import (
    BrokerConfig,
    ConnectionState,
    GatewayConfig,
    InboundMessage,
    LightCommand,
    ToolName,
)
from .exceptions import (
    BrokerConnectionError,
    GatewayError,
    MethodNotFoundError,
    NotConfiguredError,
    NotConnectedError,
    PublishError,
    ToolNotFoundError,
    UnsupportedCommandError,
    ValidationError,
)
from .mqtt_manager import BrokerLink, LinkCloser, MQTTManager
from .notifications import NotificationChannel
from .session_store import Session, SessionStore
from .connection_manager import BrokerConnectionManager
from .dispatcher import RPCDispatcher
from .bridge import BemfaGateway

__all__ = [
    "BemfaGateway",
    "BrokerConnectionManager",
    "RPCDispatcher",
    "SessionStore",
    "Session",
    "NotificationChannel",
    "BrokerLink",
    "LinkCloser",
    "MQTTManager",
    "BrokerConfig",
    "ConnectionState",
    "GatewayConfig",
    "InboundMessage",
    "LightCommand",
    "ToolName",
    "GatewayError",
    "ValidationError",
    "UnsupportedCommandError",
    "NotConfiguredError",
    "NotConnectedError",
    "BrokerConnectionError",
    "PublishError",
    "MethodNotFoundError",
    "ToolNotFoundError",
]
