"""Route a notification to a live connection or to the user's mailbox."""

from __future__ import annotations

import logging
from enum import Enum

from ..services.events import emit_relay_event
from ..services.mailbox import MailboxStore
from ..services.messages import AnyNotification
from .registry import ConnectionRegistry


LOGGER = logging.getLogger(__name__)


class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    QUEUED = "queued"
    QUEUED_AFTER_FAILURE = "queued_after_failure"


class NotificationDispatcher:
    """Deliver directly when the user is online, otherwise queue durably.

    Checking the connection and sending over it are two steps, so the
    connection can close in between. A failed send therefore falls back to the
    mailbox. If the send actually reached the browser before the failure was
    reported, the user sees the message twice; status notifications are
    idempotent refreshes, so that is tolerated.
    """

    def __init__(self, registry: ConnectionRegistry, mailbox: MailboxStore) -> None:
        self._registry = registry
        self._mailbox = mailbox

    async def deliver_or_queue(self, user_id: str, message: AnyNotification) -> DeliveryOutcome:
        """Send *message* to *user_id* and report how it was handled.

        :class:`~course_relay.errors.MailboxStoreError` propagates: losing a
        notification is not a recoverable condition.
        """

        payload = message.to_json()
        details = {"video_id": message.video_id, "status": message.status}
        connection = self._registry.lookup(user_id)

        if connection is not None and connection.is_open:
            try:
                await connection.send_text(payload)
            except Exception as error:  # noqa: BLE001 - any transport failure falls back to the mailbox
                LOGGER.warning(
                    "Direct delivery to user %s failed (%s); queuing in mailbox",
                    user_id,
                    error,
                )
                self._mailbox.enqueue(user_id, payload)
                emit_relay_event(
                    DeliveryOutcome.QUEUED_AFTER_FAILURE.value,
                    user_id=user_id,
                    payload=details,
                    level=logging.WARNING,
                )
                return DeliveryOutcome.QUEUED_AFTER_FAILURE
            emit_relay_event(DeliveryOutcome.DELIVERED.value, user_id=user_id, payload=details)
            return DeliveryOutcome.DELIVERED

        LOGGER.info("User %s is offline; queuing message in their mailbox", user_id)
        pending = self._mailbox.enqueue(user_id, payload)
        emit_relay_event(
            DeliveryOutcome.QUEUED.value,
            user_id=user_id,
            payload={**details, "pending": pending},
        )
        return DeliveryOutcome.QUEUED


__all__ = ["DeliveryOutcome", "NotificationDispatcher"]
