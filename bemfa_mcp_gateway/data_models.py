"""
Data models for the Bemfa MCP gateway.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional

from .exceptions import ValidationError, UnsupportedCommandError
from .timezone_utils import utc_now, utc_isoformat


class ConnectionState(str, Enum):
    """Broker connection state of a session"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class LightCommand(str, Enum):
    """Commands understood by a Bemfa light topic"""
    ON = "on"
    OFF = "off"
    TOGGLE = "toggle"
    STATUS = "status"

    @classmethod
    def parse(cls, value: Any) -> "LightCommand":
        try:
            return cls(value)
        except ValueError:
            raise UnsupportedCommandError(f"Unsupported command: {value}") from None

    @property
    def action_text(self) -> str:
        return {
            LightCommand.ON: "turn on",
            LightCommand.OFF: "turn off",
            LightCommand.TOGGLE: "toggle",
            LightCommand.STATUS: "status query",
        }[self]


class ToolName(str, Enum):
    """Tools exposed through tools/call"""
    CONFIGURE = "configureBemfa"
    CONNECT = "connectBemfa"
    CONTROL_LIGHT = "controlLight"
    DISCONNECT = "disconnectBemfa"
    GET_CONFIG = "getConfig"


def _mask(value: str) -> str:
    if len(value) <= 12:
        return "*" * 8
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"


@dataclass(frozen=True)
class BrokerConfig:
    """Broker settings captured by configureBemfa"""
    client_id: str
    topic: str
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_arguments(cls, arguments: Dict[str, Any],
                       default_host: str, default_port: int) -> "BrokerConfig":
        """Build a configuration from tool arguments.

        Raises ValidationError when clientId or topic is missing or empty,
        or when the port is not a valid TCP port.
        """
        client_id = arguments.get("clientId")
        topic = arguments.get("topic")
        missing = [name for name, value in (("clientId", client_id), ("topic", topic))
                   if not isinstance(value, str) or not value.strip()]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

        host = arguments.get("host") or default_host
        if not isinstance(host, str):
            raise ValidationError("host must be a string")

        raw_port = arguments.get("port")
        if raw_port is None or raw_port == "":
            raw_port = default_port
        if isinstance(raw_port, bool):
            raise ValidationError(f"Invalid port: {raw_port}")
        try:
            port = int(raw_port)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid port: {raw_port}") from None
        if not 0 < port < 65536:
            raise ValidationError(f"Invalid port: {raw_port}")

        username = arguments.get("username") or None
        password = arguments.get("password") or None
        return cls(
            client_id=client_id.strip(),
            topic=topic.strip(),
            host=host,
            port=port,
            username=username,
            password=password,
        )

    def masked(self) -> Dict[str, Any]:
        """Readback view with the client id and password hidden"""
        return {
            "host": self.host,
            "port": self.port,
            "clientId": _mask(self.client_id),
            "topic": self.topic,
            "username": self.username,
            "password": "*" * 8 if self.password else None,
        }


@dataclass
class InboundMessage:
    """A message delivered by the broker on a session's topic"""
    topic: str
    payload: str
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def from_bytes(cls, topic: str, payload: bytes) -> "InboundMessage":
        return cls(topic=topic, payload=payload.decode("utf-8", errors="replace"))

    def to_params(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "timestamp": utc_isoformat(self.timestamp),
        }


@dataclass
class GatewayConfig:
    """Process-level configuration for the gateway"""
    bemfa_server: str = "bemfa.com"
    bemfa_port: int = 9501
    host: str = "0.0.0.0"
    port: int = 4000
    heartbeat_interval: float = 30.0
    operation_timeout: float = 5.0
    keepalive: int = 60
    log_level: str = "INFO"
