from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Optional, Protocol

from fastapi import WebSocket
from starlette.websockets import WebSocketState

LOGGER = logging.getLogger(__name__)


class Connection(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send(self, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the registry's connection interface."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: dict[str, Any]) -> None:
        await self._websocket.send_json(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self._websocket.close()
        except RuntimeError:
            # The peer went away between the state check and the close frame.
            LOGGER.debug("WebSocket already closed")

    def mark_closed(self) -> None:
        self._closed = True


class ConnectionRegistry:
    """At most one live push connection per identity.

    The registry only forgets handles; closing a channel is the channel's own
    business, except on eviction where the displaced handle is closed
    explicitly.
    """

    def __init__(self, write_timeout_seconds: float = 5.0) -> None:
        self._write_timeout = write_timeout_seconds
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()

    async def register(self, identity: str, connection: Connection) -> None:
        with self._lock:
            previous = self._connections.get(identity)
            self._connections[identity] = connection
        if previous is not None and previous is not connection:
            LOGGER.info("Evicting previous connection identity=%s", identity)
            try:
                await previous.close()
            except Exception:
                LOGGER.warning(
                    "Failed to close evicted connection identity=%s",
                    identity,
                    exc_info=True,
                )

    def unregister(self, identity: str, connection: Connection) -> bool:
        with self._lock:
            if self._connections.get(identity) is not connection:
                return False
            del self._connections[identity]
        LOGGER.info("Connection removed identity=%s", identity)
        return True

    def lookup(self, identity: str) -> Optional[Connection]:
        with self._lock:
            connection = self._connections.get(identity)
        if connection is None:
            return None
        if not connection.is_open:
            self.unregister(identity, connection)
            return None
        return connection

    async def deliver(self, identity: str, payload: dict[str, Any]) -> bool:
        connection = self.lookup(identity)
        if connection is None:
            return False
        try:
            await asyncio.wait_for(connection.send(payload), self._write_timeout)
        except Exception:
            LOGGER.warning("Push write failed identity=%s", identity, exc_info=True)
            self.unregister(identity, connection)
            return False
        return True

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for connection in self._connections.values() if connection.is_open)
