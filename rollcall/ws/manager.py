from __future__ import annotations

import asyncio
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect


class EventBroadcaster:
    """Fans recognition and attendance events out to every connected UI socket."""

    def __init__(self) -> None:
        self._sockets: set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._sockets.add(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._sockets.discard(websocket)

    async def publish(self, kind: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            targets = list(self._sockets)
        for ws in targets:
            try:
                await ws.send_json({"type": kind, "payload": payload})
            except (RuntimeError, WebSocketDisconnect):
                await self.disconnect(ws)


event_broadcaster = EventBroadcaster()
