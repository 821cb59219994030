"""Webhook-driven processing state machine for uploaded videos.

Two external actors move a video forward:

* the object-storage notification (relayed by a small function) reports that
  the raw upload finished; the video becomes ``processing`` and the
  transcoding task is launched;
* the transcoding task reports ``completed`` or ``failed`` when it is done;
  the final state and output descriptor are stored and the owner is notified.

The second webhook can only arrive after the task launched by the first one
runs, which is what keeps the two transitions for one video in order.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..errors import (
    MalformedWebhookError,
    MissingOwnerError,
    RelayError,
    TriggerLaunchError,
    VideoNotFoundError,
)
from ..relay.dispatcher import DeliveryOutcome, NotificationDispatcher
from ..services.counters import JobCounter
from ..services.events import emit_webhook_event
from ..services.messages import AnyNotification, CompletedMessage, FailedMessage, ProcessingStartedMessage
from ..services.naming import decode_object_key
from ..services.storage import VideoProgress, VideoRecord, VideoRepository
from .transcoder import TaskHandle, TranscodeTrigger


LOGGER = logging.getLogger(__name__)

TRIGGER_FAILURE_MESSAGE = "A critical error occurred when starting the processing job."

# Rough throughput of the transcoding task: a fixed start-up cost plus a
# per-size component, in seconds.
_ESTIMATE_BASE_SECONDS = 60
_ESTIMATE_SECONDS_PER_CHUNK = 30
_ESTIMATE_CHUNK_BYTES = 100 * 1024 * 1024


def estimate_processing_seconds(file_size_bytes: Optional[int]) -> Optional[int]:
    """Return the expected transcoding time for an upload of the given size."""

    if file_size_bytes is None or file_size_bytes <= 0:
        return None
    chunks = file_size_bytes / _ESTIMATE_CHUNK_BYTES
    return _ESTIMATE_BASE_SECONDS + math.ceil(chunks * _ESTIMATE_SECONDS_PER_CHUNK)


@dataclass(frozen=True)
class TransitionResult:
    video: VideoRecord
    delivery: Optional[DeliveryOutcome] = None
    task: Optional[TaskHandle] = None


class UploadCompletionStateMachine:
    """Apply the two externally triggered transitions of a video."""

    def __init__(
        self,
        repository: VideoRepository,
        dispatcher: NotificationDispatcher,
        trigger: TranscodeTrigger,
        *,
        job_counter: Optional[JobCounter] = None,
        notify_processing_started: bool = False,
        executor: Optional[Executor] = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._trigger = trigger
        self._job_counter = job_counter
        self._notify_processing_started = notify_processing_started
        self._executor = executor

    @staticmethod
    def _require_owner(video: VideoRecord) -> str:
        owner = (video.owner or "").strip()
        if not owner:
            raise MissingOwnerError(video.id)
        return owner

    async def _dispatch(self, video: VideoRecord, message: AnyNotification) -> DeliveryOutcome:
        owner = self._require_owner(video)
        return await self._dispatcher.deliver_or_queue(owner, message)

    # ------------------------------------------------------------------
    # Transition A: upload finished -> processing
    # ------------------------------------------------------------------
    async def handle_upload_complete(self, raw_object_key: Optional[str]) -> TransitionResult:
        if not raw_object_key or not str(raw_object_key).strip():
            raise MalformedWebhookError("Missing objectKey in request body.")

        started = time.perf_counter()
        object_key = decode_object_key(str(raw_object_key))
        LOGGER.info("Upload webhook received key %r, decoded to %r", raw_object_key, object_key)

        video = self._repository.find_by_object_key(object_key)
        if video is None:
            LOGGER.error("No video record matches decoded key %r", object_key)
            raise VideoNotFoundError(object_key)

        video.progress = VideoProgress.PROCESSING
        video.estimated_processing_time = estimate_processing_seconds(video.original_file_size)
        self._repository.save(video)
        LOGGER.info("Video %s is now processing", video.id)

        loop = asyncio.get_running_loop()
        try:
            task = await loop.run_in_executor(self._executor, self._trigger.trigger, object_key)
        except Exception as error:
            LOGGER.exception("Launching the transcoding job for %r failed", object_key)
            self._mark_launch_failed(object_key)
            if isinstance(error, TriggerLaunchError):
                raise
            raise TriggerLaunchError(object_key, error) from error

        if self._job_counter is not None:
            self._job_counter.increment()

        delivery: Optional[DeliveryOutcome] = None
        if self._notify_processing_started:
            delivery = await self._notify_started(video)

        emit_webhook_event(
            "storage",
            "Transcoding job triggered",
            payload={"video_id": video.id, "object_key": object_key, "task_arn": task.task_arn},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return TransitionResult(video=video, delivery=delivery, task=task)

    async def _notify_started(self, video: VideoRecord) -> Optional[DeliveryOutcome]:
        # Best effort: the job is already running, so a routing or mailbox
        # failure here must not fail the webhook.
        message = ProcessingStartedMessage(
            video_id=str(video.id),
            estimated_processing_time=video.estimated_processing_time,
        )
        try:
            return await self._dispatch(video, message)
        except RelayError as error:
            LOGGER.warning("Processing notice for video %s not sent: %s", video.id, error)
            return None

    def _mark_launch_failed(self, object_key: str) -> None:
        # Look the record up again rather than trusting the earlier instance.
        video = self._repository.find_by_object_key(object_key)
        if video is None:
            LOGGER.error("Cannot mark %r as failed; the record disappeared", object_key)
            return
        video.progress = VideoProgress.FAILED
        video.error = TRIGGER_FAILURE_MESSAGE
        self._repository.save(video)

    # ------------------------------------------------------------------
    # Transition B: transcoding finished -> completed | failed
    # ------------------------------------------------------------------
    async def handle_transcode_complete(
        self,
        key: Optional[str],
        progress: Optional[str],
        video_resolutions: Optional[Mapping[str, Any]] = None,
    ) -> TransitionResult:
        if not key or not str(key).strip():
            raise MalformedWebhookError("Missing key in request body.")
        try:
            final_state = VideoProgress(progress)
        except ValueError as error:
            raise MalformedWebhookError(f"Unsupported progress value: {progress!r}") from error
        if not final_state.is_final:
            raise MalformedWebhookError(f"Unsupported progress value: {progress!r}")

        started = time.perf_counter()
        video = self._repository.find_by_object_key(str(key))
        if video is None:
            LOGGER.error("Transcoding webhook for unknown key %r; output links are lost", key)
            raise VideoNotFoundError(str(key))

        resolutions: Optional[Dict[str, Any]] = (
            dict(video_resolutions) if video_resolutions is not None else None
        )
        video.progress = final_state
        if resolutions is not None:
            video.video_resolutions = resolutions
        self._repository.save(video)
        LOGGER.info("Video %s finished with status %s", video.id, final_state.value)

        message: AnyNotification
        if final_state is VideoProgress.COMPLETED:
            message = CompletedMessage(video_id=str(video.id), video_resolutions=resolutions)
        else:
            message = FailedMessage(
                video_id=str(video.id),
                video_resolutions=resolutions,
                error=video.error,
            )
        delivery = await self._dispatch(video, message)

        if self._job_counter is not None:
            self._job_counter.decrement()

        emit_webhook_event(
            "transcoder",
            "Final status recorded",
            payload={"video_id": video.id, "status": final_state.value, "delivery": delivery},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return TransitionResult(video=video, delivery=delivery)


__all__ = [
    "TRIGGER_FAILURE_MESSAGE",
    "TransitionResult",
    "UploadCompletionStateMachine",
    "estimate_processing_seconds",
]
