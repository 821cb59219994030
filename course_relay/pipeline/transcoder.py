"""Launch the containerised transcoding job for an uploaded video."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import boto3

from ..config import TranscoderSettings
from ..errors import TranscoderConfigurationError, TriggerLaunchError


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskHandle:
    """Identifies a launched transcoding task."""

    object_key: str
    task_arn: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict, repr=False)


class TranscodeTrigger(Protocol):
    def trigger(self, object_key: str) -> TaskHandle: ...


class EcsTranscodeTrigger:
    """Start one Fargate task per uploaded video through ``ecs.run_task``.

    The task receives everything it needs through container environment
    overrides; AWS credentials come from the task role, never from here.
    """

    def __init__(self, settings: TranscoderSettings, *, client: Any = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def settings(self) -> TranscoderSettings:
        return self._settings

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ecs", region_name=self._settings.region)
        return self._client

    def build_run_task_request(self, object_key: str) -> Dict[str, Any]:
        settings = self._settings
        missing = settings.missing_fields()
        if missing:
            raise TranscoderConfigurationError(
                "Missing transcoder configuration: " + ", ".join(missing)
            )

        environment: List[Dict[str, str]] = [
            {"name": "OBJECT_KEY", "value": object_key},
            {"name": "TEMP_S3_BUCKET_NAME", "value": settings.source_bucket or ""},
            {"name": "FINAL_S3_BUCKET_NAME", "value": settings.output_bucket or ""},
            {"name": "AWS_REGION", "value": settings.region or ""},
            {"name": "WEBHOOK_URL", "value": settings.webhook_url or ""},
        ]
        return {
            "cluster": settings.cluster_arn,
            "taskDefinition": settings.task_definition_arn,
            "launchType": settings.launch_type,
            "count": 1,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": list(settings.subnet_ids),
                    "securityGroups": list(settings.security_group_ids),
                    "assignPublicIp": "ENABLED",
                }
            },
            "overrides": {
                "containerOverrides": [
                    {"name": settings.container_name, "environment": environment},
                ]
            },
            "tags": [{"key": "Purpose", "value": "Video Transcoding"}],
        }

    def trigger(self, object_key: str) -> TaskHandle:
        request = self.build_run_task_request(object_key)
        LOGGER.info(
            "Starting transcoding task for %s using %s",
            object_key,
            self._settings.task_definition_arn,
        )
        response = self._get_client().run_task(**request)

        failures = response.get("failures") or []
        tasks = response.get("tasks") or []
        if failures or not tasks:
            reasons = ", ".join(
                str(failure.get("reason") or failure.get("detail") or "unknown") for failure in failures
            )
            raise TriggerLaunchError(object_key, RuntimeError(reasons or "no task was started"))

        task_arn = tasks[0].get("taskArn")
        LOGGER.info("Launched transcoding task %s for %s", task_arn, object_key)
        return TaskHandle(object_key=object_key, task_arn=task_arn, details={"tasks": len(tasks)})


__all__ = ["EcsTranscodeTrigger", "TaskHandle", "TranscodeTrigger"]
