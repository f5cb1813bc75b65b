"""Fixed-capacity, multi-reader line buffer.

One writer appends batches of lines; any number of readers walk the buffer
with their own cursor. A cursor is an absolute line position, so a reader that
falls more than ``capacity`` lines behind silently skips the evicted lines.
"""

from __future__ import annotations

import threading
from typing import Iterable


class RollingLog:
    """Thread-safe ring buffer of text lines."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._lines: list[str | None] = [None] * capacity
        self._total = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total_lines(self) -> int:
        """Number of lines ever appended (the write head position)."""
        with self._lock:
            return self._total

    @property
    def discarded(self) -> int:
        """Number of lines evicted because the buffer was full."""
        with self._lock:
            return max(0, self._total - self._capacity)

    def __len__(self) -> int:
        with self._lock:
            return min(self._total, self._capacity)

    def add_lines(self, lines: Iterable[str]) -> None:
        """Append a batch. Batches from concurrent writers never interleave."""
        batch = list(lines)
        if not batch:
            return

        with self._lock:
            for line in batch:
                self._lines[self._total % self._capacity] = line
                self._total += 1

    def get(self, cursor: int, max_lines: int = 100) -> tuple[list[str], int]:
        """Read up to ``max_lines`` lines starting at ``cursor``.

        Returns the lines and the advanced cursor. A cursor that has caught up
        with the write head yields an empty list and is returned unchanged.
        """
        if max_lines <= 0:
            return [], cursor

        with self._lock:
            start = max(cursor, self._total - self._capacity, 0)
            end = min(self._total, start + max_lines)
            if start >= end:
                return [], max(cursor, start)
            lines = [self._lines[i % self._capacity] for i in range(start, end)]

        return lines, end  # type: ignore[return-value]

    def snapshot(self) -> list[str]:
        """All retained lines, oldest first."""
        lines: list[str] = []
        cursor = 0
        while True:
            chunk, cursor = self.get(cursor, 1000)
            if not chunk:
                return lines
            lines.extend(chunk)

    def to_text(self) -> str:
        return "\n".join(self.snapshot())


__all__ = ["RollingLog"]
