"""Accept live connections, register them and flush pending mail."""

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import WebSocket, status
from starlette.websockets import WebSocketDisconnect, WebSocketState

from ..errors import MailboxStoreError
from ..services.mailbox import MailboxStore
from .registry import ConnectionRegistry, LiveConnection


LOGGER = logging.getLogger(__name__)


class WebSocketConnection:
    """Adapt a Starlette :class:`WebSocket` to :class:`LiveConnection`."""

    def __init__(self, websocket: WebSocket, user_id: str) -> None:
        self._websocket = websocket
        self.user_id = user_id

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self._websocket.send_text(data)

    async def close(self, code: int = 1000) -> None:
        if self._websocket.application_state != WebSocketState.DISCONNECTED:
            await self._websocket.close(code=code)


class ConnectionLifecycleManager:
    """Drive a connection through ``Connecting -> Open -> Closed``.

    On open the user's mailbox is drained once and the snapshot is sent in
    enqueue order, each send completing before the next starts. Messages
    enqueued after the snapshot are delivered live by the dispatcher. If the
    connection drops mid-drain the unsent remainder of the snapshot is lost.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        mailbox: MailboxStore,
        *,
        send_welcome: bool = True,
    ) -> None:
        self._registry = registry
        self._mailbox = mailbox
        self._send_welcome = send_welcome

    @staticmethod
    def extract_user_id(websocket: WebSocket) -> Optional[str]:
        user_id = (websocket.query_params.get("userId") or "").strip()
        return user_id or None

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one websocket from upgrade to close."""

        user_id = self.extract_user_id(websocket)
        if user_id is None:
            LOGGER.warning("Connection rejected: no userId provided")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        connection = WebSocketConnection(websocket, user_id)
        LOGGER.info("Client connected for user %s", user_id)
        try:
            try:
                await self.open(user_id, connection)
            except MailboxStoreError:
                LOGGER.exception("Could not drain mailbox for user %s", user_id)
                await connection.close(code=status.WS_1011_INTERNAL_ERROR)
                return
            await self._consume(websocket, user_id)
        finally:
            await self.close(user_id, connection)

    async def open(self, user_id: str, connection: LiveConnection) -> int:
        """Register *connection* and deliver the pending snapshot.

        Returns the number of drained messages that were sent.
        """

        await self._registry.register(user_id, connection)

        if self._send_welcome:
            welcome = json.dumps({"message": f"Welcome! Connection established for user {user_id}."})
            try:
                await connection.send_text(welcome)
            except Exception:  # noqa: BLE001 - peer vanished before the drain began
                LOGGER.warning("Connection for user %s closed before the mailbox drain", user_id)
                return 0

        messages = self._mailbox.drain_all(user_id)
        delivered = 0
        for payload in messages:
            try:
                await connection.send_text(payload)
            except Exception as error:  # noqa: BLE001 - drain stops at the first failed send
                LOGGER.warning(
                    "Connection for user %s failed mid-drain (%s); %s pending message(s) dropped",
                    user_id,
                    error,
                    len(messages) - delivered,
                )
                break
            delivered += 1
        if messages:
            LOGGER.info("Delivered %s/%s pending message(s) to user %s", delivered, len(messages), user_id)
        return delivered

    async def close(self, user_id: str, connection: LiveConnection) -> bool:
        removed = await self._registry.unregister(user_id, connection)
        LOGGER.info("Client disconnected for user %s", user_id)
        return removed

    async def _consume(self, websocket: WebSocket, user_id: str) -> None:
        # The browser never sends anything meaningful; read until it goes away.
        while True:
            try:
                message = await websocket.receive()
            except WebSocketDisconnect:
                return
            if message.get("type") == "websocket.disconnect":
                return
            LOGGER.debug("Ignoring inbound frame from user %s", user_id)


__all__ = ["ConnectionLifecycleManager", "WebSocketConnection"]
