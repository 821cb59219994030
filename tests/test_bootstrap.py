import sqlite3
from pathlib import Path

import pytest

import course_relay.config as config_module
from course_relay.bootstrap import BootstrapError, Bootstrapper
from course_relay.config import AppConfig


def test_bootstrapper_raises_when_storage_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    storage_root = tmp_path / "storage"
    config = AppConfig(
        storage_root=storage_root,
        database_file=storage_root / "course_relay.db",
    )

    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == storage_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "storage" in str(excinfo.value).lower()


def test_bootstrapper_creates_schema_and_is_idempotent(temp_config: AppConfig) -> None:
    Bootstrapper(temp_config).initialize()

    connection = sqlite3.connect(temp_config.database_file)
    try:
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        video_columns = {row[1] for row in connection.execute("PRAGMA table_info(videos)")}
    finally:
        connection.close()

    assert {"videos", "mailbox_messages", "job_counters"} <= tables
    assert {"estimated_processing_time", "error", "video_resolutions"} <= video_columns
