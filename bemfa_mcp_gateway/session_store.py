"""
Session table for the Bemfa MCP gateway.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .data_models import BrokerConfig, ConnectionState
from .mqtt_manager import BrokerLink, LinkCloser
from .timezone_utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Session:
    """State of one MCP session"""
    session_id: str
    channel: Any
    config: Optional[BrokerConfig] = None
    active_config: Optional[BrokerConfig] = None
    link: Optional[BrokerLink] = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending: Dict[Any, asyncio.Task] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self.link is not None


class SessionStore:
    """Maps session ids to sessions"""

    def __init__(self, closer: Optional[LinkCloser] = None):
        self.closer = closer or LinkCloser()
        self._sessions: Dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def count(self) -> int:
        return len(self._sessions)

    def session_ids(self):
        return list(self._sessions)

    def create(self, channel) -> Session:
        session = Session(session_id=str(uuid.uuid4()), channel=channel)
        self._sessions[session.session_id] = session
        logger.info(f"New session created: {session.session_id} (active: {self.count})")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        """Drop a session, closing its channel and broker link.

        The link is closed in the background; failures are logged. Removing
        an unknown id is a no-op.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None

        session.closed = True
        for task in list(session.pending.values()):
            task.cancel()
        session.pending.clear()

        link = session.link
        session.link = None
        session.state = ConnectionState.DISCONNECTED
        if link is not None:
            self.closer.close_in_background(link)

        session.channel.close()
        del self._sessions[session_id]
        lifetime = (utc_now() - session.created_at).total_seconds()
        logger.info(f"Session closed: {session_id} after {lifetime:.1f}s (active: {self.count})")
        return session

    async def wait_closed(self):
        """Wait for background link closes to finish"""
        await self.closer.wait_closed()
