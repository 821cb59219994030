"""In-memory mapping of online users to their live connection."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Protocol


LOGGER = logging.getLogger(__name__)


class LiveConnection(Protocol):
    """Minimal surface the relay needs from a browser connection."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ConnectionRegistry:
    """Tracks at most one live connection per user id.

    A new registration replaces the previous one. Removal is identity checked
    so that a stale connection closing late cannot evict its replacement.
    One instance lives for the lifetime of the web application.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, LiveConnection] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, connection: LiveConnection) -> Optional[LiveConnection]:
        """Map *user_id* to *connection* and return the handle it replaced."""

        async with self._lock:
            previous = self._connections.get(user_id)
            self._connections[user_id] = connection
        if previous is not None and previous is not connection:
            LOGGER.info("Replaced live connection for user %s", user_id)
        else:
            LOGGER.debug("Registered live connection for user %s", user_id)
        return previous

    async def unregister(self, user_id: str, connection: LiveConnection) -> bool:
        """Remove *user_id* only while it still points at *connection*."""

        async with self._lock:
            current = self._connections.get(user_id)
            if current is not connection:
                LOGGER.debug(
                    "Skipping unregister for user %s; a newer connection is registered",
                    user_id,
                )
                return False
            del self._connections[user_id]
        LOGGER.debug("Unregistered live connection for user %s", user_id)
        return True

    def lookup(self, user_id: str) -> Optional[LiveConnection]:
        return self._connections.get(user_id)

    def users(self) -> List[str]:
        return sorted(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    async def close_all(self, code: int = 1001) -> int:
        """Close and forget every registered connection; used at shutdown."""

        async with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()
        for user_id, connection in connections:
            try:
                await connection.close(code=code)
            except Exception:  # noqa: BLE001 - shutdown must reach every connection
                LOGGER.warning("Closing connection for user %s failed", user_id, exc_info=True)
        if connections:
            LOGGER.info("Closed %s live connection(s)", len(connections))
        return len(connections)


__all__ = ["ConnectionRegistry", "LiveConnection"]
