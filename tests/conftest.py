from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from course_relay.bootstrap import Bootstrapper
from course_relay.config import AppConfig
from course_relay.pipeline.transcoder import TaskHandle
from course_relay.services.counters import JobCounter
from course_relay.services.mailbox import MailboxStore
from course_relay.services.storage import VideoRepository


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",
            \"database_file\": \"storage/course_relay.db\"
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/course_relay.db",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> VideoRepository:
    return VideoRepository(temp_config)


@pytest.fixture()
def mailbox(temp_config: AppConfig) -> MailboxStore:
    return MailboxStore(temp_config)


@pytest.fixture()
def counter(temp_config: AppConfig) -> JobCounter:
    return JobCounter(temp_config)


class FakeConnection:
    """In-memory stand-in for a browser socket."""

    def __init__(self, *, fail_after: Optional[int] = None) -> None:
        self.sent: List[str] = []
        self.closed_with: Optional[int] = None
        self._open = True
        self._fail_after = fail_after

    @property
    def is_open(self) -> bool:
        return self._open

    async def send_text(self, data: str) -> None:
        if not self._open:
            raise RuntimeError("connection closed")
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            self._open = False
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self._open = False
        self.closed_with = code

    def drop(self) -> None:
        self._open = False


class FakeTrigger:
    """Records launch requests; raises *error* instead when configured."""

    def __init__(self, error: Optional[BaseException] = None) -> None:
        self.calls: List[str] = []
        self.error = error

    def trigger(self, object_key: str) -> TaskHandle:
        self.calls.append(object_key)
        if self.error is not None:
            raise self.error
        return TaskHandle(object_key=object_key, task_arn=f"arn:aws:ecs:task/{len(self.calls)}")


@pytest.fixture()
def make_connection() -> Callable[..., FakeConnection]:
    return FakeConnection


@pytest.fixture()
def fake_trigger() -> FakeTrigger:
    return FakeTrigger()
