"""Utility helpers for consistent object-storage key naming."""

from __future__ import annotations

import re
import time
from typing import Optional
from urllib.parse import unquote

__all__ = [
    "UPLOAD_PREFIX",
    "build_object_key",
    "decode_object_key",
]


UPLOAD_PREFIX = "uploads/videos"


def build_object_key(file_name: str, *, timestamp_ms: Optional[int] = None) -> str:
    """Return the upload key for *file_name*.

    Keys look like ``uploads/videos/<epoch-ms>-<file_name>`` with whitespace
    replaced by underscores, the layout the upload bucket expects.
    """

    stamp = int(time.time() * 1000) if timestamp_ms is None else int(timestamp_ms)
    cleaned = re.sub(r"\s", "_", file_name.strip()) or "video"
    return f"{UPLOAD_PREFIX}/{stamp}-{cleaned}"


def decode_object_key(raw_key: str) -> str:
    """Undo the form encoding storage notifications apply to object keys.

    ``+`` is turned back into a space first, then percent escapes are decoded,
    so a literal plus sign survives as ``%2B``.
    """

    return unquote(raw_key.replace("+", " "))
