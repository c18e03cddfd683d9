"""
MCP HTTP Server Module

Serves the MCP protocol over server-sent events: a client opens the event
stream, receives the URL to post requests to, and gets every response and
broker notification back on the stream.
"""

import logging

import aiohttp_cors
from aiohttp import web
from aiohttp_sse import sse_response

from .bridge import BemfaGateway

logger = logging.getLogger(__name__)

SSE_PATH = "/mqttx/sse"
MESSAGE_PATH = "/mqttx/message"

# Cancel a stream handler as soon as its client disconnects
RUNNER_OPTIONS = {"handler_cancellation": True}


class MCPHTTPServer:
    """HTTP server exposing a gateway over SSE"""

    def __init__(self, gateway: BemfaGateway, host: str = "0.0.0.0", port: int = 4000):
        self.gateway = gateway
        self.host = host
        self.port = port
        self.app = web.Application()
        self._runner = None
        self._setup_routes()
        self._setup_cors()
        self.app.on_shutdown.append(self._on_shutdown)

    def _setup_cors(self):
        """Setup CORS for cross-origin requests"""
        cors = aiohttp_cors.setup(self.app, defaults={
            "*": aiohttp_cors.ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*"
            )
        })

        for route in list(self.app.router.routes()):
            cors.add(route)

    def _setup_routes(self):
        self.app.router.add_get("/health", self.health_check)
        self.app.router.add_get(SSE_PATH, self.event_stream)
        self.app.router.add_post(MESSAGE_PATH, self.post_message)

    async def health_check(self, request):
        return web.json_response(self.gateway.health())

    async def event_stream(self, request):
        """Open a session and stream its events until either side closes"""
        logger.info(f"New SSE connection from {request.remote}")
        session = self.gateway.open_session()
        session.channel.send_event("endpoint", f"{MESSAGE_PATH}?sessionId={session.session_id}")
        try:
            async with sse_response(request) as resp:
                await session.channel.run(resp)
            return resp
        finally:
            self.gateway.close_session(session.session_id)

    async def post_message(self, request):
        """Acknowledge a JSON-RPC request and process it in the background"""
        session_id = request.query.get("sessionId")
        if not session_id:
            return web.json_response({"error": "Missing sessionId"}, status=400)

        session = self.gateway.get_session(session_id)
        if session is None:
            return web.json_response({"error": "Invalid session"}, status=404)

        try:
            rpc = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(rpc, dict):
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        logger.info(f"Received {rpc.get('method')} request for session {session_id}")
        self.gateway.submit(session, rpc)
        return web.json_response({
            "jsonrpc": "2.0",
            "id": rpc.get("id"),
            "result": {"ack": True}
        })

    async def _on_shutdown(self, app):
        await self.gateway.stop()

    async def start(self):
        """Start the HTTP server"""
        self._runner = web.AppRunner(self.app, **RUNNER_OPTIONS)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"MCP HTTP server started on http://{self.host}:{self.port}")
        logger.info(f"  - Health check: http://{self.host}:{self.port}/health")
        logger.info(f"  - MCP SSE stream: http://{self.host}:{self.port}{SSE_PATH}")

    async def stop(self):
        """Stop the HTTP server"""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("MCP HTTP server stopped")
