"""
Error types raised by the gateway.

Every error carries the JSON-RPC error code used when it is reported back to
the caller over the notification stream.
"""

from mcp import types


class GatewayError(Exception):
    """Base class for errors reported to MCP callers"""
    code = -32000


class ValidationError(GatewayError):
    """A tool argument is missing or malformed"""
    code = types.INVALID_PARAMS


class UnsupportedCommandError(ValidationError):
    """The light command is outside the supported set"""


class NotConfiguredError(GatewayError):
    """connectBemfa was called before configureBemfa"""

    def __init__(self, message: str = "Broker is not configured, call configureBemfa first"):
        super().__init__(message)


class NotConnectedError(GatewayError):
    """The session has no live broker connection"""

    def __init__(self, message: str = "Not connected to the MQTT broker"):
        super().__init__(message)


class BrokerConnectionError(GatewayError):
    """Opening or closing the broker connection failed"""
    code = -32001


class PublishError(GatewayError):
    """The broker link failed to send a message"""
    code = -32002


class InvalidRequestError(GatewayError):
    code = types.INVALID_REQUEST


class MethodNotFoundError(GatewayError):
    code = types.METHOD_NOT_FOUND


class ToolNotFoundError(GatewayError):
    code = types.INVALID_PARAMS
