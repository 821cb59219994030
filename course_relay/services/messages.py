"""Wire format of the status notifications pushed to browser clients."""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _NotificationBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    video_id: str = Field(alias="videoId", min_length=1)

    def to_json(self) -> str:
        """Serialise using the camelCase field names the browser expects."""

        data = self.model_dump(mode="json", by_alias=True)
        return json.dumps({key: value for key, value in data.items() if value is not None})


class ProcessingStartedMessage(_NotificationBase):
    status: Literal["processing"] = "processing"
    estimated_processing_time: Optional[int] = Field(default=None, alias="estimatedProcessingTime")


class CompletedMessage(_NotificationBase):
    status: Literal["completed"] = "completed"
    video_resolutions: Optional[Dict[str, Any]] = Field(default=None, alias="videoResolutions")


class FailedMessage(_NotificationBase):
    status: Literal["failed"] = "failed"
    video_resolutions: Optional[Dict[str, Any]] = Field(default=None, alias="videoResolutions")
    error: Optional[str] = None


AnyNotification = Union[ProcessingStartedMessage, CompletedMessage, FailedMessage]

NotificationMessage = Annotated[AnyNotification, Field(discriminator="status")]

_NOTIFICATION_ADAPTER: TypeAdapter[Any] = TypeAdapter(NotificationMessage)


def parse_notification(text: Union[str, bytes]) -> AnyNotification:
    """Rebuild a notification from its serialised form.

    Raises :class:`pydantic.ValidationError` for unknown statuses or fields.
    """

    return _NOTIFICATION_ADAPTER.validate_json(text)


__all__ = [
    "AnyNotification",
    "CompletedMessage",
    "FailedMessage",
    "NotificationMessage",
    "ProcessingStartedMessage",
    "parse_notification",
]
