"""Persistence helpers for video records backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import AppConfig


class VideoProgress(str, Enum):
    """Processing states a video moves through."""

    QUEUED = "queued"
    INITIALIZING = "initializing"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in {VideoProgress.COMPLETED, VideoProgress.FAILED}


@dataclass
class VideoRecord:
    id: int
    object_key: str
    owner: Optional[str]
    title: str
    description: str
    progress: VideoProgress
    original_file_size: Optional[int] = None
    estimated_processing_time: Optional[int] = None
    video_resolutions: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "objectKey": self.object_key,
            "owner": self.owner,
            "title": self.title,
            "description": self.description,
            "progress": self.progress.value,
            "originalFileSize": self.original_file_size,
            "estimatedProcessingTime": self.estimated_processing_time,
            "videoResolutions": self.video_resolutions,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


_VIDEO_COLUMNS = (
    "id, object_key, owner, title, description, progress, original_file_size, "
    "estimated_processing_time, video_resolutions, error, created_at, updated_at"
)


LOGGER = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _row_to_record(row: sqlite3.Row) -> VideoRecord:
    resolutions_raw = row["video_resolutions"]
    resolutions: Optional[Dict[str, Any]] = None
    if resolutions_raw:
        try:
            resolutions = json.loads(resolutions_raw)
        except json.JSONDecodeError:
            LOGGER.warning("Discarding unreadable resolutions for video id=%s", row["id"])
    return VideoRecord(
        id=int(row["id"]),
        object_key=row["object_key"],
        owner=row["owner"],
        title=row["title"] or "",
        description=row["description"] or "",
        progress=VideoProgress(row["progress"]),
        original_file_size=row["original_file_size"],
        estimated_processing_time=row["estimated_processing_time"],
        video_resolutions=resolutions,
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLiteStore:
    """Connection and instrumentation plumbing shared by the SQLite stores."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:120] + ("…" if len(collapsed) > 120 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        LOGGER.debug("SQL %s (%d parameter(s))", self._summarize_sql(statement), len(params))
        return connection.execute(statement, params)

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path, timeout=30.0)
        connection.row_factory = sqlite3.Row
        return connection


class VideoRepository(SQLiteStore):
    """Lookup and persistence of :class:`VideoRecord` rows."""

    def create_video(
        self,
        object_key: str,
        owner: Optional[str],
        *,
        title: str = "",
        description: str = "",
        original_file_size: Optional[int] = None,
        progress: VideoProgress = VideoProgress.INITIALIZING,
    ) -> VideoRecord:
        LOGGER.debug("Creating video record for key '%s' (owner=%s)", object_key, owner)
        now = _utc_now()
        with self._track_db_event("create_video", table="videos", object_key=object_key) as event:
            with contextlib.closing(self._connect()) as connection, connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO videos(object_key, owner, title, description, progress, "
                    "original_file_size, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        object_key,
                        owner,
                        title,
                        description,
                        VideoProgress(progress).value,
                        original_file_size,
                        now,
                        now,
                    ),
                )
                video_id = int(cursor.lastrowid)
                event["video_id"] = video_id
        record = self.get_video(video_id)
        assert record is not None  # nosec - inserted above
        return record

    def _fetch_one(self, action: str, where: str, value: Any) -> Optional[VideoRecord]:
        with self._track_db_event(action, table="videos") as event:
            with contextlib.closing(self._connect()) as connection:
                row = self._execute(
                    connection,
                    f"SELECT {_VIDEO_COLUMNS} FROM videos WHERE {where} = ?",
                    (value,),
                ).fetchone()
            event["found"] = row is not None
        return _row_to_record(row) if row is not None else None

    def get_video(self, video_id: int) -> Optional[VideoRecord]:
        LOGGER.debug("Fetching video id=%s", video_id)
        return self._fetch_one("get_video", "id", int(video_id))

    def find_by_object_key(self, object_key: str) -> Optional[VideoRecord]:
        LOGGER.debug("Looking up video by object key '%s'", object_key)
        record = self._fetch_one("find_by_object_key", "object_key", object_key)
        if record is None:
            LOGGER.debug("No video registered for key '%s'", object_key)
        return record

    def save(self, record: VideoRecord) -> VideoRecord:
        """Persist the mutable fields of *record* and return the stored row."""

        resolutions = (
            json.dumps(record.video_resolutions) if record.video_resolutions is not None else None
        )
        now = _utc_now()
        with self._track_db_event(
            "save_video",
            table="videos",
            video_id=record.id,
            progress=record.progress.value,
        ) as event:
            with contextlib.closing(self._connect()) as connection, connection:
                cursor = self._execute(
                    connection,
                    "UPDATE videos SET owner = ?, title = ?, description = ?, progress = ?, "
                    "original_file_size = ?, estimated_processing_time = ?, "
                    "video_resolutions = ?, error = ?, updated_at = ? WHERE id = ?",
                    (
                        record.owner,
                        record.title,
                        record.description,
                        VideoProgress(record.progress).value,
                        record.original_file_size,
                        record.estimated_processing_time,
                        resolutions,
                        record.error,
                        now,
                        record.id,
                    ),
                )
                event["rowcount"] = cursor.rowcount
                if cursor.rowcount == 0:
                    raise LookupError(f"Video {record.id} no longer exists")
        record.updated_at = now
        LOGGER.debug("Saved video id=%s with progress=%s", record.id, record.progress.value)
        return record

    def list_videos(self, progress: Optional[VideoProgress] = None) -> List[VideoRecord]:
        query = f"SELECT {_VIDEO_COLUMNS} FROM videos"
        params: List[Any] = []
        if progress is not None:
            query += " WHERE progress = ?"
            params.append(VideoProgress(progress).value)
        query += " ORDER BY id"
        with self._track_db_event("list_videos", table="videos") as event:
            with contextlib.closing(self._connect()) as connection:
                rows = self._execute(connection, query, params).fetchall()
            event["rowcount"] = len(rows)
        return [_row_to_record(row) for row in rows]

    def count_by_progress(self) -> Dict[VideoProgress, int]:
        counts = {state: 0 for state in VideoProgress}
        with contextlib.closing(self._connect()) as connection:
            rows = self._execute(
                connection, "SELECT progress, COUNT(*) AS total FROM videos GROUP BY progress"
            ).fetchall()
        for row in rows:
            counts[VideoProgress(row["progress"])] = int(row["total"])
        return counts


__all__ = ["SQLiteStore", "VideoProgress", "VideoRecord", "VideoRepository"]
