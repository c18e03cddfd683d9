"""
Notification transport for MCP sessions.

Every session has one ``NotificationChannel``. Responses, broker messages and
heartbeats are queued on it and a single writer drains the queue into the
session's server-sent event stream, so events leave in the order they were
queued.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

from .timezone_utils import epoch_millis

logger = logging.getLogger(__name__)

_CLOSE = None


class NotificationChannel:
    """Per-session FIFO of server-sent events"""

    def __init__(self, heartbeat_interval: float = 30.0):
        self.heartbeat_interval = heartbeat_interval
        self._queue: "asyncio.Queue[Optional[Tuple[str, str]]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send_event(self, event: str, data: str):
        """Queue a raw event; dropped once the channel is closed"""
        if self._closed:
            logger.debug(f"Dropping {event} event on closed channel")
            return
        self._queue.put_nowait((event, data))

    def send_message(self, message: Dict[str, Any]):
        """Queue a JSON-RPC payload as a ``message`` event"""
        self.send_event("message", json.dumps(message, ensure_ascii=False))

    def notify(self, method: str, params: Dict[str, Any]):
        """Queue a JSON-RPC notification"""
        self.send_message({"jsonrpc": "2.0", "method": method, "params": params})

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def run(self, response):
        """Write queued events to ``response`` until closed or the peer goes away.

        ``response`` is any object with an async ``send(data, event=...)``
        method, normally an ``aiohttp_sse.EventSourceResponse``.
        """
        heartbeat = asyncio.create_task(self._heartbeat())
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    break
                event, data = item
                await response.send(data, event=event)
        except ConnectionResetError:
            logger.info("Event stream closed by client")
        finally:
            heartbeat.cancel()
            self._closed = True

    async def _heartbeat(self):
        while not self._closed:
            await asyncio.sleep(self.heartbeat_interval)
            self.send_event("heartbeat", str(epoch_millis()))
