"""Exception hierarchy shared by the relay, the pipeline and the web layer."""

from __future__ import annotations

from typing import Optional


class RelayError(RuntimeError):
    """Base class for failures raised by Course Video Relay."""


class MalformedWebhookError(RelayError):
    """Raised when a webhook body is missing a required field."""


class VideoNotFoundError(RelayError):
    """Raised when no video record matches an object key."""

    def __init__(self, object_key: str) -> None:
        super().__init__(f"Video record not found for key '{object_key}'")
        self.object_key = object_key


class MissingOwnerError(RelayError):
    """Raised when a video record has no owner to route notifications to."""

    def __init__(self, video_id: int) -> None:
        super().__init__(f"Video {video_id} has no owner; notification cannot be routed")
        self.video_id = video_id


class TriggerLaunchError(RelayError):
    """Raised when the external transcoding job could not be started."""

    def __init__(self, object_key: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to launch transcoding job for '{object_key}'{detail}")
        self.object_key = object_key


class TranscoderConfigurationError(RelayError):
    """Raised when the transcoder settings are incomplete."""


class MailboxStoreError(RelayError):
    """Raised when the mailbox backing store fails to append or drain."""


__all__ = [
    "MailboxStoreError",
    "MalformedWebhookError",
    "MissingOwnerError",
    "RelayError",
    "TranscoderConfigurationError",
    "TriggerLaunchError",
    "VideoNotFoundError",
]
