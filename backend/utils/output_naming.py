"""Collision-free names for derived artifacts and stored uploads."""

from __future__ import annotations

import itertools
import os
import re
import secrets
import threading
import time

MAX_BASENAME_LENGTH = 120

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

_counter = itertools.count()
_counter_lock = threading.Lock()


def sanitize_basename(name: str, default: str = "clip") -> str:
    base = os.path.basename(name.replace("\\", "/"))
    base = _UNSAFE_CHARS.sub("_", base).lstrip(".-_")
    if not base:
        return default
    if len(base) > MAX_BASENAME_LENGTH:
        stem, ext = os.path.splitext(base)
        ext = ext[:16]
        base = stem[: MAX_BASENAME_LENGTH - len(ext)] + ext
    return base


def unique_token() -> str:
    """Nanosecond timestamp + process-wide sequence + random suffix."""
    with _counter_lock:
        sequence = next(_counter)
    return f"{time.time_ns()}{sequence % 1_000_000:06d}{secrets.token_hex(3)}"


def generate_output_name(
    source_name: str,
    prefix: str = "processed",
    extension: str | None = None,
) -> str:
    base = sanitize_basename(source_name)
    if extension:
        stem, _ = os.path.splitext(base)
        base = f"{stem or 'clip'}.{extension.lstrip('.')}"
    return f"{prefix}-{unique_token()}-{base}"
