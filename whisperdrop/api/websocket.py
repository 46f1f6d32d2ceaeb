"""WebSocket fan-out of discovery and expiry events."""

import asyncio
import json
import logging

from fastapi import WebSocket

from whisperdrop.config import WS_SEND_TIMEOUT

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks connected clients and pushes ``{"event", "data"}`` frames to all of them."""

    def __init__(self, send_timeout: float = WS_SEND_TIMEOUT) -> None:
        self._connections: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._send_timeout = send_timeout

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)
        logger.info(f"WebSocket client connected. Total: {self.connection_count}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(websocket)
        logger.info(f"WebSocket client disconnected. Total: {self.connection_count}")

    async def broadcast(self, event: str, data: dict) -> None:
        message = json.dumps({"event": event, "data": data}, default=str)
        async with self._lock:
            targets = list(self._connections)
        if not targets:
            return

        # Sends run concurrently outside the lock; a stalled client times out
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_text(message), self._send_timeout) for ws in targets),
            return_exceptions=True,
        )
        dead = []
        for ws, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.debug(f"Dropping WebSocket client: {result!r}")
                dead.append(ws)
        if dead:
            async with self._lock:
                self._connections.difference_update(dead)

    async def on_peer_change(self, event: str, device) -> None:
        """Compatible with ``DiscoveryService.on_peer_change``."""
        await self.broadcast(event, device.model_dump(mode="json"))

    async def on_message_tick(self, tick) -> None:
        """Compatible with ``ExpiryScheduler.on_tick``."""
        await self.broadcast("message_tick", tick.model_dump(mode="json"))

    async def on_message_expired(self, message_id: str) -> None:
        """Compatible with ``ExpiryScheduler.on_expire``."""
        await self.broadcast("message_expired", {"message_id": message_id})
