from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class NotificationHub:
    """
    Tracks at most one live notification websocket per user.

    Sync endpoints run in FastAPI's threadpool, so pushes are scheduled onto
    the event loop that owns the socket instead of being awaited directly.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._channels: dict[str, tuple[WebSocket, asyncio.AbstractEventLoop]] = {}

    async def register(self, user_id: str, ws: WebSocket) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            previous = self._channels.get(user_id)
            self._channels[user_id] = (ws, loop)
        if previous and previous[0] is not ws:
            logger.info("Replacing notification channel for user_id=%s", user_id)
            self._schedule_close(previous, code=4000)

    def unregister(self, user_id: str, ws: WebSocket) -> None:
        with self._lock:
            current = self._channels.get(user_id)
            if current and current[0] is ws:
                del self._channels[user_id]

    def push(self, user_id: str, payload: dict[str, Any]) -> bool:
        """
        Fire-and-forget send to the user's channel. Returns False when the
        user has no open channel.
        """
        with self._lock:
            entry = self._channels.get(user_id)
        if not entry:
            return False
        ws, loop = entry
        if loop.is_closed():
            self.unregister(user_id, ws)
            return False
        fut = asyncio.run_coroutine_threadsafe(ws.send_json(payload), loop)
        fut.add_done_callback(lambda f: self._log_send_failure(user_id, f))
        return True

    def disconnect(self, user_id: str) -> None:
        with self._lock:
            entry = self._channels.pop(user_id, None)
        if entry:
            self._schedule_close(entry, code=1000)

    def _schedule_close(self, entry: tuple[WebSocket, asyncio.AbstractEventLoop], *, code: int) -> None:
        ws, loop = entry
        if loop.is_closed():
            return
        fut = asyncio.run_coroutine_threadsafe(ws.close(code=code), loop)
        fut.add_done_callback(lambda f: self._log_send_failure("-", f))

    @staticmethod
    def _log_send_failure(user_id: str, fut) -> None:
        if fut.cancelled():
            return
        err = fut.exception()
        if err is not None:
            logger.warning("Notification channel send failed user_id=%s: %s", user_id, err)


hub = NotificationHub()
