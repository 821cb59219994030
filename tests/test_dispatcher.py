from __future__ import annotations

import asyncio
import json

from course_relay.relay.dispatcher import DeliveryOutcome, NotificationDispatcher
from course_relay.relay.registry import ConnectionRegistry
from course_relay.services.mailbox import MailboxStore
from course_relay.services.messages import CompletedMessage, FailedMessage


def _completed(video_id: str = "1") -> CompletedMessage:
    return CompletedMessage(video_id=video_id, video_resolutions={"720p": "https://cdn/720p.m3u8"})


def test_online_user_receives_message_directly(mailbox: MailboxStore, make_connection) -> None:
    connection = make_connection()

    async def scenario():
        registry = ConnectionRegistry()
        await registry.register("u1", connection)
        return await NotificationDispatcher(registry, mailbox).deliver_or_queue("u1", _completed())

    outcome = asyncio.run(scenario())

    assert outcome is DeliveryOutcome.DELIVERED
    assert [json.loads(item)["status"] for item in connection.sent] == ["completed"]
    assert mailbox.pending_count("u1") == 0


def test_offline_user_gets_message_queued(mailbox: MailboxStore) -> None:
    async def scenario():
        dispatcher = NotificationDispatcher(ConnectionRegistry(), mailbox)
        await dispatcher.deliver_or_queue("u1", _completed("1"))
        return await dispatcher.deliver_or_queue("u1", FailedMessage(video_id="2"))

    outcome = asyncio.run(scenario())

    assert outcome is DeliveryOutcome.QUEUED
    assert [json.loads(item)["videoId"] for item in mailbox.peek("u1")] == ["1", "2"]


def test_closed_connection_is_treated_as_offline(mailbox: MailboxStore, make_connection) -> None:
    connection = make_connection()
    connection.drop()

    async def scenario():
        registry = ConnectionRegistry()
        await registry.register("u1", connection)
        return await NotificationDispatcher(registry, mailbox).deliver_or_queue("u1", _completed())

    assert asyncio.run(scenario()) is DeliveryOutcome.QUEUED
    assert connection.sent == []
    assert mailbox.pending_count("u1") == 1


def test_failed_send_falls_back_to_mailbox(mailbox: MailboxStore, make_connection) -> None:
    connection = make_connection(fail_after=0)

    async def scenario():
        registry = ConnectionRegistry()
        await registry.register("u1", connection)
        return await NotificationDispatcher(registry, mailbox).deliver_or_queue("u1", _completed("5"))

    outcome = asyncio.run(scenario())

    assert outcome is DeliveryOutcome.QUEUED_AFTER_FAILURE
    (payload,) = mailbox.peek("u1")
    assert json.loads(payload)["videoId"] == "5"


class _AckLostConnection:
    """Hands the frame to the peer, then reports the send as failed."""

    def __init__(self) -> None:
        self.sent = []
        self.is_open = True

    async def send_text(self, data: str) -> None:
        self.sent.append(data)
        self.is_open = False
        raise ConnectionResetError("reset after write")

    async def close(self, code: int = 1000) -> None:
        self.is_open = False


def test_send_failing_after_write_is_also_queued(mailbox: MailboxStore) -> None:
    connection = _AckLostConnection()

    async def scenario():
        registry = ConnectionRegistry()
        await registry.register("u1", connection)
        return await NotificationDispatcher(registry, mailbox).deliver_or_queue("u1", _completed("7"))

    outcome = asyncio.run(scenario())

    assert outcome is DeliveryOutcome.QUEUED_AFTER_FAILURE
    assert [json.loads(item)["videoId"] for item in connection.sent] == ["7"]
    assert [json.loads(item)["videoId"] for item in mailbox.peek("u1")] == ["7"]
