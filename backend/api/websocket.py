"""Pushes session events to UI clients over WebSocket."""

import asyncio
import json
import logging

from fastapi import WebSocket

from config import WS_SEND_TIMEOUT

logger = logging.getLogger(__name__)


def _frame(event: str, data: dict) -> str:
    return json.dumps({"event": event, "data": data})


class ConnectionManager:
    """UI clients fed from ``TransferManager.on_event()``.

    Events are emitted from inside the session's receive loop, so every
    send is bounded by a timeout and a client that misses it is dropped.
    """

    def __init__(self, send_timeout: float = WS_SEND_TIMEOUT) -> None:
        self._clients: set[WebSocket] = set()
        self._send_timeout = send_timeout

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket, snapshot: dict | None = None) -> None:
        """Accept a client and bring it up to date with ``snapshot``."""
        await websocket.accept()
        if snapshot is not None:
            await self.send_snapshot(websocket, snapshot)
        self._clients.add(websocket)
        logger.info(f"UI client connected ({self.client_count} open)")

    def disconnect(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        logger.info(f"UI client disconnected ({self.client_count} open)")

    async def send_snapshot(self, websocket: WebSocket, snapshot: dict) -> None:
        await self._send(websocket, _frame("session_state", snapshot))

    async def broadcast(self, event: str, data: dict) -> None:
        if not self._clients:
            return
        message = _frame(event, data)
        clients = list(self._clients)
        results = await asyncio.gather(
            *(self._send(ws, message) for ws in clients), return_exceptions=True
        )
        for ws, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.warning(f"Dropping UI client after failed '{event}' send: {result!r}")
                self._clients.discard(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Callback for ``TransferManager.on_event()``."""
        await self.broadcast(event_type, data)

    async def _send(self, websocket: WebSocket, message: str) -> None:
        await asyncio.wait_for(websocket.send_text(message), timeout=self._send_timeout)
