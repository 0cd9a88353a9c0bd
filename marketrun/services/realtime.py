"""WebSocket transport for order events.

Sync request handlers publish from worker threads, so events are handed to
each connection's asyncio queue through ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any

from marketrun.core.config import settings
from marketrun.services.event_fanout import OrderEvent

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks live connections per user and forwards events to recipients."""

    def __init__(self, maxsize: int | None = None) -> None:
        self.maxsize = settings.event_queue_size if maxsize is None else maxsize
        self._queues: dict[int, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._loops: dict[asyncio.Queue[dict[str, Any]], asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    def connect(self, user_id: int) -> asyncio.Queue[dict[str, Any]]:
        """Register a connection; must be called from its event loop."""
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.maxsize)
        with self._lock:
            self._queues.setdefault(user_id, set()).add(queue)
            self._loops[queue] = asyncio.get_running_loop()
        logger.info("[FANOUT] user_id=%s connected", user_id)
        return queue

    def disconnect(self, user_id: int, queue: asyncio.Queue[dict[str, Any]]) -> None:
        with self._lock:
            queues = self._queues.get(user_id)
            if queues is not None:
                queues.discard(queue)
                if not queues:
                    del self._queues[user_id]
            self._loops.pop(queue, None)
        logger.info("[FANOUT] user_id=%s disconnected", user_id)

    def connection_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._queues.get(user_id, ()))

    def __call__(self, event: OrderEvent) -> None:
        payload = event.model_dump(mode="json")
        with self._lock:
            targets = [
                (queue, self._loops[queue])
                for user_id in event.recipients
                for queue in self._queues.get(user_id, ())
            ]
        for queue, loop in targets:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(self._offer, queue, payload)

    def _offer(self, queue: asyncio.Queue[dict[str, Any]], payload: dict[str, Any]) -> None:
        """Enqueue on the connection's loop; a full queue drops the event."""
        if queue.full():
            logger.warning(
                "[FANOUT] Dropped %s for order_id=%s: client queue full (%s)",
                payload["event_type"],
                payload["order_id"],
                self.maxsize,
            )
            return
        queue.put_nowait(payload)


connection_manager: ConnectionManager = ConnectionManager()
