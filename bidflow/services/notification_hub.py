import asyncio
from typing import Dict, Set, Any

import structlog
from fastapi import WebSocket


logger = structlog.get_logger(__name__)


class NotificationHub:
    def __init__(self) -> None:
        # user_id (str) -> set of WebSocket connections
        self._user_connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, user_id: str, ws: WebSocket) -> None:
        async with self._lock:
            conns = self._user_connections.setdefault(user_id, set())
            conns.add(ws)

    async def disconnect(self, user_id: str, ws: WebSocket) -> None:
        async with self._lock:
            conns = self._user_connections.get(user_id)
            if conns is not None:
                conns.discard(ws)
                if not conns:
                    self._user_connections.pop(user_id, None)

    def connection_count(self, user_id: str) -> int:
        return len(self._user_connections.get(user_id, ()))

    async def send_to_user(self, user_id: str, event: str, payload: Any) -> int:
        """Push to every live socket of ``user_id``; returns how many accepted it."""
        data = {"event": event, "data": payload}
        async with self._lock:
            targets = list(self._user_connections.get(user_id, set()))
        delivered = 0
        for ws in targets:
            try:
                await ws.send_json(data)
                delivered += 1
            except Exception as e:
                # best-effort; drop on failure
                logger.debug("hub_send_failed", user_id=user_id, hub_event=event, error=str(e))
        return delivered


# Global singleton hub
hub = NotificationHub()
