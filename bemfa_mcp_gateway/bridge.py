"""
Main Gateway Coordinator

Owns the session store, broker connection manager and request dispatcher,
and runs submitted requests out-of-band so their results reach the caller
over the session's notification stream.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from . import __version__
from .connection_manager import BrokerConnectionManager, LinkFactory
from .data_models import GatewayConfig
from .dispatcher import RPCDispatcher
from .mqtt_manager import LinkCloser
from .notifications import NotificationChannel
from .session_store import Session, SessionStore
from .timezone_utils import utc_isoformat, utc_now

logger = logging.getLogger(__name__)


class BemfaGateway:
    """Bridges MCP sessions to per-session MQTT connections"""

    def __init__(self, config: Optional[GatewayConfig] = None,
                 link_factory: Optional[LinkFactory] = None):
        self.config = config or GatewayConfig()
        self.closer = LinkCloser(timeout=2 * self.config.operation_timeout)
        self.store = SessionStore(self.closer)
        self.manager = BrokerConnectionManager(self.config, link_factory, self.closer)
        self.dispatcher = RPCDispatcher(self.manager, self.config)

    def open_session(self) -> Session:
        """Create a session with a fresh notification channel"""
        channel = NotificationChannel(self.config.heartbeat_interval)
        return self.store.create(channel)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get(session_id)

    def close_session(self, session_id: str):
        """Tear down a session; safe to call more than once"""
        self.store.remove(session_id)

    def submit(self, session: Session, message: Dict[str, Any]) -> asyncio.Task:
        """Process a request in the background.

        The task is tracked under the request id so that closing the session
        cancels it.
        """
        task = asyncio.create_task(self._process(session, message))
        key = message.get("id")
        if key is None:
            key = id(task)
        elif key in session.pending:
            logger.warning(f"Request id {key} already in flight for session {session.session_id}")
            key = (key, id(task))
        session.pending[key] = task

        def _done(finished: asyncio.Task):
            if session.pending.get(key) is finished:
                del session.pending[key]

        task.add_done_callback(_done)
        return task

    async def _process(self, session: Session, message: Dict[str, Any]):
        response = await self.dispatcher.dispatch(session, message)
        if response is not None:
            session.channel.send_message(response)

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "service": "bemfa-mcp-gateway",
            "version": __version__,
            "timestamp": utc_isoformat(utc_now()),
            "sessions": self.store.count,
        }

    async def stop(self):
        """Close every session and wait for broker connections to shut down"""
        logger.info(f"Stopping gateway with {self.store.count} active session(s)")
        for session_id in self.store.session_ids():
            self.store.remove(session_id)
        await self.closer.wait_closed()
