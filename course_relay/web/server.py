"""FastAPI application exposing the relay webhooks and the live socket."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import uuid
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..errors import (
    MailboxStoreError,
    MalformedWebhookError,
    MissingOwnerError,
    TranscoderConfigurationError,
    TriggerLaunchError,
    VideoNotFoundError,
)
from ..pipeline.state_machine import UploadCompletionStateMachine
from ..pipeline.transcoder import EcsTranscodeTrigger, TranscodeTrigger
from ..relay.dispatcher import NotificationDispatcher
from ..relay.lifecycle import ConnectionLifecycleManager
from ..relay.registry import ConnectionRegistry
from ..services.counters import JobCounter
from ..services.events import emit_db_event
from ..services.mailbox import MailboxStore
from ..services.messages import parse_notification
from ..services.storage import VideoRepository


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "course_relay_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "course_relay_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request or socket session."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        scope_type = scope.get("type")
        if scope_type not in {"http", "websocket"}:
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method") if scope_type == "http" else "WS"
        actor = f"{scope_type}:{method}" if method else str(scope_type)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor)
        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("course_relay.events"), {})


def normalize_root_path(value: Optional[str]) -> str:
    """Return *value* as ``/prefix`` without a trailing slash, or ``""``."""

    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


class S3TriggerPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    object_key: Optional[str] = Field(default=None, alias="objectKey")


class TranscodeCompletePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: Optional[str] = None
    progress: Optional[str] = None
    video_resolutions: Optional[Dict[str, Any]] = Field(default=None, alias="videoResolutions")


def create_app(
    repository: VideoRepository,
    *,
    config: AppConfig,
    mailbox: Optional[MailboxStore] = None,
    counter: Optional[JobCounter] = None,
    trigger: Optional[TranscodeTrigger] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application.

    Collaborators default to their production implementations; tests pass
    fakes for the transcoding trigger.
    """

    registry = ConnectionRegistry()

    @contextlib.asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        closed = await registry.close_all()
        LOGGER.info("Shutdown closed %s live connection(s)", closed)

    app = FastAPI(
        title="Course Relay",
        description="Upload-completion notifications for course videos",
        root_path=normalize_root_path(root_path),
        lifespan=_lifespan,
    )

    if mailbox is None:
        mailbox = MailboxStore(config)
    if counter is None:
        counter = JobCounter(config)
    if trigger is None:
        trigger = EcsTranscodeTrigger(config.transcoder)

    def _store_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
        if event_type == "DB_QUERY":
            emit_db_event(message, context=_collect_correlation_context(), logger=EVENT_LOGGER, **kwargs)
        else:
            LOGGER.debug("Unhandled store event %s: %s", event_type, message)

    for store in (repository, mailbox, counter):
        configure_emitter = getattr(store, "configure_event_emitter", None)
        if callable(configure_emitter):
            configure_emitter(_store_event_emitter)

    dispatcher = NotificationDispatcher(registry, mailbox)
    lifecycle = ConnectionLifecycleManager(registry, mailbox)
    state_machine = UploadCompletionStateMachine(
        repository,
        dispatcher,
        trigger,
        job_counter=counter,
        notify_processing_started=config.notify_processing_started,
    )

    app.state.config = config
    app.state.repository = repository
    app.state.mailbox = mailbox
    app.state.job_counter = counter
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    app.state.lifecycle = lifecycle
    app.state.state_machine = state_machine

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "connections": len(registry),
        }

    @app.post("/api/videos/s3-trigger")
    async def handle_s3_trigger(payload: S3TriggerPayload) -> Dict[str, Any]:
        try:
            result = await state_machine.handle_upload_complete(payload.object_key)
        except MalformedWebhookError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except VideoNotFoundError as error:
            raise HTTPException(
                status_code=404,
                detail="Video record not found for the given key.",
            ) from error
        except (TriggerLaunchError, TranscoderConfigurationError) as error:
            LOGGER.error("Transcoding launch failed: %s", error)
            raise HTTPException(status_code=500, detail="Failed to start video processing job.") from error
        except (MissingOwnerError, MailboxStoreError) as error:
            LOGGER.exception("Upload webhook failed: %s", error)
            raise HTTPException(status_code=500, detail=str(error)) from error

        return {
            "status": "success",
            "message": "Processing job successfully triggered.",
            "videoId": result.video.id,
            "taskArn": result.task.task_arn if result.task else None,
        }

    @app.post("/api/videos/ecs-trigger")
    async def handle_ecs_trigger(payload: TranscodeCompletePayload) -> Dict[str, Any]:
        try:
            result = await state_machine.handle_transcode_complete(
                payload.key,
                payload.progress,
                payload.video_resolutions,
            )
        except MalformedWebhookError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except VideoNotFoundError as error:
            raise HTTPException(status_code=404, detail="Video not found!") from error
        except (MissingOwnerError, MailboxStoreError) as error:
            LOGGER.exception("Transcoding webhook failed: %s", error)
            raise HTTPException(status_code=500, detail=str(error)) from error

        return {
            "message": "ECS trigger processed successfully.",
            "videoId": result.video.id,
            "delivery": result.delivery.value if result.delivery else None,
        }

    @app.get("/api/videos/{video_id}")
    async def get_video(video_id: int) -> Dict[str, Any]:
        record = repository.get_video(video_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return {"video": record.to_dict()}

    @app.get("/api/videos/{video_id}/status")
    async def get_video_status(video_id: int) -> Dict[str, Any]:
        record = repository.get_video(video_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return {"status": "success", "progress": record.progress.value}

    @app.get("/api/jobs/active")
    async def get_active_jobs() -> Dict[str, Any]:
        return {"name": counter.name, "active": counter.value()}

    @app.get("/api/notifications/{user_id}")
    async def peek_notifications(user_id: str) -> Dict[str, Any]:
        try:
            pending = mailbox.peek(user_id)
        except MailboxStoreError as error:
            raise HTTPException(status_code=500, detail=str(error)) from error
        messages = [parse_notification(item).model_dump(mode="json", by_alias=True) for item in pending]
        return {"userId": user_id, "pending": len(messages), "messages": messages}

    @app.websocket("/ws")
    async def notifications_socket(websocket: WebSocket) -> None:
        await lifecycle.handle(websocket)

    return app


__all__ = [
    "ContextualLoggerAdapter",
    "RequestContextMiddleware",
    "S3TriggerPayload",
    "TranscodeCompletePayload",
    "create_app",
    "normalize_root_path",
]
