"""Configuration loading utilities for the Course Video Relay service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".course_relay_write_check"

# Environment overrides understood by the transcoder settings. The variable
# names match the ones the transcoding container and the deployment use.
_TRANSCODER_ENV_VARS: Dict[str, str] = {
    "cluster_arn": "ECS_CLUSTER_ARN",
    "task_definition_arn": "ECS_TASK_DEFINITION_ARN",
    "container_name": "ECS_CONTAINER_NAME",
    "subnet_ids": "SUBNET_IDS",
    "security_group_ids": "SECURITY_GROUP_IDS",
    "source_bucket": "TEMP_S3_BUCKET_NAME",
    "output_bucket": "FINAL_S3_BUCKET_NAME",
    "region": "AWS_REGION",
    "webhook_url": "WEBHOOK_URL",
}


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The boolean in the result tells the
    caller whether a fallback was used. When nothing can be prepared the
    original ``preferred`` path is returned so the bootstrapper can report it.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _split_csv(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(",")
    return tuple(item.strip() for item in (str(raw) for raw in items) if item.strip())


@dataclass(frozen=True)
class TranscoderSettings:
    """Parameters used to launch the containerised transcoding task."""

    cluster_arn: Optional[str] = None
    task_definition_arn: Optional[str] = None
    container_name: Optional[str] = None
    subnet_ids: Tuple[str, ...] = ()
    security_group_ids: Tuple[str, ...] = ()
    source_bucket: Optional[str] = None
    output_bucket: Optional[str] = None
    region: Optional[str] = None
    webhook_url: Optional[str] = None
    launch_type: str = "FARGATE"

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "TranscoderSettings":
        data = dict(mapping or {})
        return cls(
            cluster_arn=data.get("cluster_arn") or None,
            task_definition_arn=data.get("task_definition_arn") or None,
            container_name=data.get("container_name") or None,
            subnet_ids=_split_csv(data.get("subnet_ids")),
            security_group_ids=_split_csv(data.get("security_group_ids")),
            source_bucket=data.get("source_bucket") or None,
            output_bucket=data.get("output_bucket") or None,
            region=data.get("region") or None,
            webhook_url=data.get("webhook_url") or None,
            launch_type=str(data.get("launch_type") or "FARGATE"),
        )

    def with_environment(self, environ: Optional[Mapping[str, str]] = None) -> "TranscoderSettings":
        """Return a copy with any values present in *environ* applied on top."""

        source = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for attribute, variable in _TRANSCODER_ENV_VARS.items():
            raw = (source.get(variable) or "").strip()
            if not raw:
                continue
            if attribute in {"subnet_ids", "security_group_ids"}:
                overrides[attribute] = _split_csv(raw)
            else:
                overrides[attribute] = raw
        if not overrides:
            return self
        LOGGER.debug("Applying transcoder overrides from environment: %s", sorted(overrides))
        return replace(self, **overrides)

    def missing_fields(self) -> Tuple[str, ...]:
        """Return the names of required settings that are not configured."""

        missing = []
        for attribute, variable in _TRANSCODER_ENV_VARS.items():
            if not getattr(self, attribute):
                missing.append(variable)
        return tuple(missing)


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and behaviour switches for the service."""

    storage_root: Path
    database_file: Path
    notify_processing_started: bool = False
    transcoder: TranscoderSettings = field(default_factory=TranscoderSettings)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".course_relay" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        transcoder = TranscoderSettings.from_mapping(mapping.get("transcoder"))

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            notify_processing_started=bool(mapping.get("notify_processing_started", False)),
            transcoder=transcoder,
        )


def load_config(
    config_path: Path | None = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load the configuration from ``config/default.json`` by default.

    Transcoder values found in the environment take precedence over the file.
    """

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    config = AppConfig.from_mapping(raw_config, base_path=base_path)
    return replace(config, transcoder=config.transcoder.with_environment(environ))


__all__ = ["AppConfig", "TranscoderSettings", "load_config"]
