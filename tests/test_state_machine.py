from __future__ import annotations

import asyncio
import json

import pytest

from course_relay.errors import (
    MalformedWebhookError,
    MissingOwnerError,
    TriggerLaunchError,
    VideoNotFoundError,
)
from course_relay.pipeline.state_machine import (
    TRIGGER_FAILURE_MESSAGE,
    UploadCompletionStateMachine,
    estimate_processing_seconds,
)
from course_relay.relay.dispatcher import DeliveryOutcome, NotificationDispatcher
from course_relay.relay.registry import ConnectionRegistry
from course_relay.services.messages import CompletedMessage, parse_notification
from course_relay.services.storage import VideoProgress


KEY = "uploads/videos/123-x.mp4"
RESOLUTIONS = {"playlist": "https://cdn.example/123-x/playlist.m3u8"}


class Harness:
    def __init__(self, repository, mailbox, counter, trigger, *, notify_processing_started=False):
        self.repository = repository
        self.mailbox = mailbox
        self.counter = counter
        self.trigger = trigger
        self.registry = ConnectionRegistry()
        self.machine = UploadCompletionStateMachine(
            repository,
            NotificationDispatcher(self.registry, mailbox),
            trigger,
            job_counter=counter,
            notify_processing_started=notify_processing_started,
        )


@pytest.fixture()
def harness(repository, mailbox, counter, fake_trigger) -> Harness:
    return Harness(repository, mailbox, counter, fake_trigger)


def test_estimate_processing_seconds() -> None:
    assert estimate_processing_seconds(None) is None
    assert estimate_processing_seconds(0) is None
    assert estimate_processing_seconds(100 * 1024 * 1024) == 90
    assert estimate_processing_seconds(1) == 61


def test_upload_complete_moves_video_to_processing(harness: Harness) -> None:
    video = harness.repository.create_video(KEY, "u1", original_file_size=200 * 1024 * 1024)

    result = asyncio.run(harness.machine.handle_upload_complete(KEY))

    stored = harness.repository.get_video(video.id)
    assert stored.progress is VideoProgress.PROCESSING
    assert stored.estimated_processing_time == 120
    assert harness.trigger.calls == [KEY]
    assert result.task is not None and result.task.task_arn
    assert harness.counter.value() == 1
    assert harness.mailbox.pending_count("u1") == 0


def test_upload_complete_decodes_form_encoded_key(harness: Harness) -> None:
    harness.repository.create_video("uploads/videos/1-My Lesson.mp4", "u1")

    asyncio.run(harness.machine.handle_upload_complete("uploads/videos/1-My+Lesson.mp4"))

    assert harness.trigger.calls == ["uploads/videos/1-My Lesson.mp4"]


def test_upload_complete_for_unknown_key_changes_nothing(harness: Harness) -> None:
    other = harness.repository.create_video("uploads/videos/other.mp4", "u1")

    with pytest.raises(VideoNotFoundError):
        asyncio.run(harness.machine.handle_upload_complete(KEY))

    assert harness.trigger.calls == []
    assert harness.repository.get_video(other.id).progress is VideoProgress.INITIALIZING
    assert harness.counter.value() == 0


@pytest.mark.parametrize("raw_key", [None, "", "   "])
def test_upload_complete_rejects_blank_keys(harness: Harness, raw_key) -> None:
    with pytest.raises(MalformedWebhookError):
        asyncio.run(harness.machine.handle_upload_complete(raw_key))

    assert harness.trigger.calls == []


def test_trigger_failure_marks_video_failed(harness: Harness) -> None:
    video = harness.repository.create_video(KEY, "u1")
    harness.trigger.error = RuntimeError("capacity unavailable")

    with pytest.raises(TriggerLaunchError) as excinfo:
        asyncio.run(harness.machine.handle_upload_complete(KEY))

    assert "capacity unavailable" in str(excinfo.value)
    stored = harness.repository.get_video(video.id)
    assert stored.progress is VideoProgress.FAILED
    assert stored.error == TRIGGER_FAILURE_MESSAGE
    assert harness.counter.value() == 0


def test_processing_started_notification_is_optional(repository, mailbox, counter, fake_trigger) -> None:
    harness = Harness(repository, mailbox, counter, fake_trigger, notify_processing_started=True)
    repository.create_video(KEY, "u1", original_file_size=1024)

    result = asyncio.run(harness.machine.handle_upload_complete(KEY))

    assert result.delivery is DeliveryOutcome.QUEUED
    (payload,) = mailbox.peek("u1")
    assert json.loads(payload) == {
        "videoId": str(result.video.id),
        "status": "processing",
        "estimatedProcessingTime": 61,
    }


def test_processing_notice_failure_does_not_block_launch(repository, mailbox, counter, fake_trigger) -> None:
    harness = Harness(repository, mailbox, counter, fake_trigger, notify_processing_started=True)
    video = repository.create_video(KEY, None)

    result = asyncio.run(harness.machine.handle_upload_complete(KEY))

    assert fake_trigger.calls == [KEY]
    assert result.delivery is None
    assert result.task is not None
    assert repository.get_video(video.id).progress is VideoProgress.PROCESSING
    assert counter.value() == 1
    assert mailbox.pending_users() == []


def test_transcode_completed_without_resolutions(harness: Harness) -> None:
    video = harness.repository.create_video(KEY, "u1", progress=VideoProgress.PROCESSING)

    result = asyncio.run(harness.machine.handle_transcode_complete(KEY, "completed"))

    stored = harness.repository.get_video(video.id)
    assert stored.progress is VideoProgress.COMPLETED
    assert result.delivery is DeliveryOutcome.QUEUED
    (payload,) = harness.mailbox.drain_all("u1")
    assert json.loads(payload) == {"videoId": str(video.id), "status": "completed"}


def test_transcode_failed_does_not_need_resolutions(harness: Harness) -> None:
    video = harness.repository.create_video(KEY, "u1", progress=VideoProgress.PROCESSING)

    result = asyncio.run(harness.machine.handle_transcode_complete(KEY, "failed"))

    assert harness.repository.get_video(video.id).progress is VideoProgress.FAILED
    assert result.delivery is DeliveryOutcome.QUEUED
    (payload,) = harness.mailbox.drain_all("u1")
    assert json.loads(payload) == {"videoId": str(video.id), "status": "failed"}


@pytest.mark.parametrize(
    "key, progress, resolutions",
    [
        ("", "completed", RESOLUTIONS),
        (KEY, "processing", RESOLUTIONS),
        (KEY, "bogus", RESOLUTIONS),
        (KEY, None, RESOLUTIONS),
    ],
)
def test_transcode_complete_rejects_malformed_input(harness: Harness, key, progress, resolutions) -> None:
    harness.repository.create_video(KEY, "u1", progress=VideoProgress.PROCESSING)

    with pytest.raises(MalformedWebhookError):
        asyncio.run(harness.machine.handle_transcode_complete(key, progress, resolutions))

    assert harness.repository.find_by_object_key(KEY).progress is VideoProgress.PROCESSING
    assert harness.mailbox.pending_count("u1") == 0


def test_transcode_complete_for_unknown_key(harness: Harness) -> None:
    with pytest.raises(VideoNotFoundError):
        asyncio.run(harness.machine.handle_transcode_complete(KEY, "completed", RESOLUTIONS))


def test_transcode_complete_without_owner_is_fatal(harness: Harness) -> None:
    harness.repository.create_video(KEY, None, progress=VideoProgress.PROCESSING)

    with pytest.raises(MissingOwnerError):
        asyncio.run(harness.machine.handle_transcode_complete(KEY, "completed", RESOLUTIONS))

    assert harness.mailbox.pending_users() == []


def test_counter_tracks_active_jobs_and_stays_non_negative(harness: Harness) -> None:
    harness.repository.create_video(KEY, "u1")

    async def scenario():
        await harness.machine.handle_upload_complete(KEY)
        await harness.machine.handle_transcode_complete(KEY, "completed", RESOLUTIONS)
        await harness.machine.handle_transcode_complete(KEY, "completed", RESOLUTIONS)

    asyncio.run(scenario())

    assert harness.counter.value() == 0


def test_end_to_end_with_offline_owner(harness: Harness) -> None:
    video = harness.repository.create_video(KEY, "u1")

    async def scenario():
        await harness.machine.handle_upload_complete(KEY)
        assert harness.repository.get_video(video.id).progress is VideoProgress.PROCESSING
        return await harness.machine.handle_transcode_complete(KEY, "completed", RESOLUTIONS)

    result = asyncio.run(scenario())

    assert harness.trigger.calls == [KEY]
    stored = harness.repository.get_video(video.id)
    assert stored.progress is VideoProgress.COMPLETED
    assert stored.video_resolutions == RESOLUTIONS
    assert result.delivery is DeliveryOutcome.QUEUED

    drained = harness.mailbox.drain_all("u1")
    assert len(drained) == 1
    expected = CompletedMessage(video_id=str(video.id), video_resolutions=RESOLUTIONS)
    assert parse_notification(drained[0]) == expected


def test_end_to_end_with_online_owner(harness: Harness, make_connection) -> None:
    video = harness.repository.create_video(KEY, "u1")
    connection = make_connection()

    async def scenario():
        await harness.machine.handle_upload_complete(KEY)
        await harness.registry.register("u1", connection)
        return await harness.machine.handle_transcode_complete(KEY, "completed", RESOLUTIONS)

    result = asyncio.run(scenario())

    assert result.delivery is DeliveryOutcome.DELIVERED
    assert [json.loads(item) for item in connection.sent] == [
        {"videoId": str(video.id), "status": "completed", "videoResolutions": RESOLUTIONS}
    ]
    assert harness.mailbox.pending_count("u1") == 0
