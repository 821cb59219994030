"""Named integer counters shared by the webhook handlers."""

from __future__ import annotations

import contextlib
import logging
from typing import Callable, Optional

from ..config import AppConfig
from .storage import SQLiteStore


LOGGER = logging.getLogger(__name__)

ACTIVE_TRANSCODING_JOBS = "CURRENT_VIDEO_TRANSCODING_JOB_COUNT"


class JobCounter(SQLiteStore):
    """Persistent counter of in-flight transcoding jobs.

    The value never drops below zero: a completion webhook for a job that was
    launched before the counter existed must not leave it negative.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        name: str = ACTIVE_TRANSCODING_JOBS,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        super().__init__(config, event_emitter=event_emitter)
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _adjust(self, delta: int) -> int:
        with self._track_db_event("counter.adjust", table="job_counters", name=self._name, delta=delta) as event:
            with contextlib.closing(self._connect()) as connection, connection:
                self._execute(
                    connection,
                    "INSERT OR IGNORE INTO job_counters(name, value) VALUES (?, 0)",
                    (self._name,),
                )
                self._execute(
                    connection,
                    "UPDATE job_counters SET value = MAX(value + ?, 0) WHERE name = ?",
                    (delta, self._name),
                )
                value = self._execute(
                    connection,
                    "SELECT value FROM job_counters WHERE name = ?",
                    (self._name,),
                ).fetchone()[0]
            event["value"] = int(value)
        LOGGER.debug("Counter %s adjusted by %+d -> %s", self._name, delta, value)
        return int(value)

    def increment(self) -> int:
        return self._adjust(1)

    def decrement(self) -> int:
        return self._adjust(-1)

    def value(self) -> int:
        with contextlib.closing(self._connect()) as connection:
            row = self._execute(
                connection,
                "SELECT value FROM job_counters WHERE name = ?",
                (self._name,),
            ).fetchone()
        return int(row[0]) if row is not None else 0


__all__ = ["ACTIVE_TRANSCODING_JOBS", "JobCounter"]
