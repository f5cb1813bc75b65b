"""Small text helpers shared by jobs, routers and the tracking issue bodies."""

from __future__ import annotations

import itertools
import threading
import time

KB = 1024
MB = 1024 * KB
GB = 1024 * MB


def truncate_with_dots(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - 3)] + "..."


def rough_size(size: int) -> str:
    """``12 MB`` / ``3 KB`` / ``100 B``, rounded down."""
    if size >= MB:
        return f"{size // MB} MB"
    if size >= KB:
        return f"{size // KB} KB"
    return f"{size} B"


def elapsed_time(seconds: float, include_seconds: bool = True) -> str:
    """``1 h 5 min 3 sec``, omitting zero leading units."""
    total = int(seconds)
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)

    parts = []
    if days:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours or parts:
        parts.append(f"{hours} h")
    if minutes or parts or not include_seconds:
        parts.append(f"{minutes} min")
    if include_seconds:
        parts.append(f"{secs} sec")
    return " ".join(parts)


def split_lines(text: str) -> list[str]:
    return text.replace("\r\n", "\n").split("\n")


# Snowflake-style ids: millisecond timestamp + per-process sequence
_SNOWFLAKE_EPOCH_MS = 1_609_459_200_000  # 2021-01-01
_snowflake_lock = threading.Lock()
_snowflake_counter = itertools.count()


def next_snowflake() -> int:
    with _snowflake_lock:
        sequence = next(_snowflake_counter) & 0x3FFFFF
    timestamp = int(time.time() * 1000) - _SNOWFLAKE_EPOCH_MS
    return (timestamp << 22) | sequence


def next_snowflake_string() -> str:
    return str(next_snowflake())
