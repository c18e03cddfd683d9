"""
MCP request dispatcher

Decodes JSON-RPC requests received for a session, routes ``tools/call`` to
the broker connection manager and packages results and errors as JSON-RPC
responses.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mcp import types

from . import __version__
from .connection_manager import BrokerConnectionManager
from .data_models import GatewayConfig, LightCommand, ToolName
from .exceptions import (
    GatewayError,
    InvalidRequestError,
    MethodNotFoundError,
    ToolNotFoundError,
    ValidationError,
)
from .session_store import Session

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "bemfa-light-controller"

ToolHandler = Callable[[Session, Dict[str, Any]], Awaitable[str]]


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _text_result(text: str) -> Dict[str, Any]:
    return _dump(types.CallToolResult(
        content=[types.TextContent(type="text", text=text)],
        isError=False,
    ))


class RPCDispatcher:
    """Handles the MCP methods of one gateway"""

    def __init__(self, manager: BrokerConnectionManager, config: GatewayConfig):
        self.manager = manager
        self.config = config
        self.tools: Dict[ToolName, ToolHandler] = {
            ToolName.CONFIGURE: self.configure_bemfa,
            ToolName.CONNECT: self.connect_bemfa,
            ToolName.CONTROL_LIGHT: self.control_light,
            ToolName.DISCONNECT: self.disconnect_bemfa,
            ToolName.GET_CONFIG: self.get_config,
        }
        missing = set(ToolName) - set(self.tools)
        if missing:
            raise RuntimeError(f"No handler for tools: {sorted(t.value for t in missing)}")

    async def dispatch(self, session: Session, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Handle one JSON-RPC message.

        Returns the response to push to the session, or None for
        notifications. Gateway errors are turned into error responses and
        unexpected exceptions into internal errors; neither propagates.
        """
        if "id" not in message or message.get("id") is None:
            logger.debug(f"Notification {message.get('method')} for session {session.session_id}")
            return None

        request_id = message["id"]
        method = message.get("method")
        try:
            if not isinstance(method, str):
                raise InvalidRequestError("Request has no method")
            result = await self._handle(session, method, message.get("params") or {})
        except GatewayError as e:
            logger.warning(f"{method} failed for session {session.session_id}: {e}")
            return self.error_response(request_id, e.code, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error handling {method}: {e}")
            return self.error_response(request_id, types.INTERNAL_ERROR, f"Internal error: {e}")
        return self.result_response(request_id, result)

    async def _handle(self, session: Session, method: str, params: Any) -> Dict[str, Any]:
        if method == "initialize":
            return self.initialize_result()
        if method == "tools/list":
            return {"tools": self.list_tools()}
        if method == "ping":
            return {}
        if method == "tools/call":
            if not isinstance(params, dict):
                raise ValidationError("params must be an object")
            return await self.call_tool(session, params.get("name"), params.get("arguments"))
        raise MethodNotFoundError(f"Unknown method: {method}")

    async def call_tool(self, session: Session, tool_name: Any, arguments: Any) -> Dict[str, Any]:
        """Route a tools/call to its handler"""
        try:
            tool = ToolName(tool_name)
        except ValueError:
            raise ToolNotFoundError(f"Unknown tool: {tool_name}") from None

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ValidationError("arguments must be an object")

        logger.info(f"Calling tool {tool.value} for session {session.session_id}")
        text = await self.tools[tool](session, arguments)
        return _text_result(text)

    async def configure_bemfa(self, session: Session, arguments: Dict[str, Any]) -> str:
        broker_config = self.manager.configure(session, arguments)
        return (f"Configuration saved: {broker_config.host}:{broker_config.port}, "
                f"topic {broker_config.topic}")

    async def connect_bemfa(self, session: Session, arguments: Dict[str, Any]) -> str:
        if arguments:
            self.manager.configure(session, arguments)
        broker_config = await self.manager.connect(session)
        return f"Connected to Bemfa MQTT broker, topic: {broker_config.topic}"

    async def control_light(self, session: Session, arguments: Dict[str, Any]) -> str:
        command: LightCommand = await self.manager.publish(session, arguments.get("command"))
        return f"Sent {command.action_text} command"

    async def disconnect_bemfa(self, session: Session, arguments: Dict[str, Any]) -> str:
        await self.manager.disconnect(session)
        return "Disconnected from MQTT broker"

    async def get_config(self, session: Session, arguments: Dict[str, Any]) -> str:
        return json.dumps(self.manager.get_config(session), ensure_ascii=False)

    def initialize_result(self) -> Dict[str, Any]:
        return _dump(types.InitializeResult(
            protocolVersion=PROTOCOL_VERSION,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=True),
            ),
            serverInfo=types.Implementation(name=SERVER_NAME, version=__version__),
        ))

    def list_tools(self) -> List[Dict[str, Any]]:
        """Schemas of the tools exposed through tools/call"""
        broker_properties = {
            "host": {
                "type": "string",
                "description": "MQTT broker host",
                "default": self.config.bemfa_server,
            },
            "port": {
                "type": "number",
                "description": "MQTT broker port",
                "default": self.config.bemfa_port,
            },
            "clientId": {"type": "string", "description": "Bemfa client id (private key)"},
            "topic": {"type": "string", "description": "Topic of the light device"},
            "username": {"type": "string", "description": "Optional MQTT username"},
            "password": {"type": "string", "description": "Optional MQTT password"},
        }
        tools = [
            types.Tool(
                name=ToolName.CONFIGURE.value,
                description="Store the Bemfa MQTT broker settings for this session",
                inputSchema={
                    "type": "object",
                    "properties": broker_properties,
                    "required": ["clientId", "topic"],
                },
            ),
            types.Tool(
                name=ToolName.CONNECT.value,
                description=("Connect to the Bemfa MQTT broker using the stored settings; "
                             "settings passed here are stored first"),
                inputSchema={"type": "object", "properties": broker_properties},
            ),
            types.Tool(
                name=ToolName.CONTROL_LIGHT.value,
                description="Control the smart light",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "command": {
                            "type": "string",
                            "enum": [command.value for command in LightCommand],
                            "description": "Light command: on, off, toggle or status",
                        }
                    },
                    "required": ["command"],
                },
            ),
            types.Tool(
                name=ToolName.DISCONNECT.value,
                description="Disconnect from the MQTT broker",
                inputSchema={"type": "object", "properties": {}},
            ),
            types.Tool(
                name=ToolName.GET_CONFIG.value,
                description="Show the stored broker settings with secrets masked",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]
        return [_dump(tool) for tool in tools]

    @staticmethod
    def result_response(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    @staticmethod
    def error_response(request_id: Any, code: int, message: str) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}
