"""Per-job cancellation: idle timeout, duration timeout and fail-fast.

The three sources feed one ``JobCancellation``; the first one to fire wins and
is recorded for diagnostics. Everything here runs on the job's event loop.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class CompletionSource(str, Enum):
    FINISHED = "finished"
    IDLE_TIMEOUT = "idle_timeout"
    DURATION_TIMEOUT = "duration_timeout"
    FAIL_FAST = "fail_fast"
    ERROR = "error"


class Deadline:
    """Re-armable one-shot timer."""

    def __init__(self, name: str, on_fire: Callable[[], None]) -> None:
        self.name = name
        self._on_fire = on_fire
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handle: asyncio.TimerHandle | None = None
        self.fired = False
        self.disabled = False

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def armed(self) -> bool:
        return self._handle is not None and not self.fired and not self.disabled

    def reset(self, seconds: float) -> None:
        """Fire ``seconds`` from now, replacing any earlier schedule."""
        if self.fired or self.disabled or self._loop is None:
            return
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._loop.call_later(max(0.0, seconds), self.fire)

    def fire(self) -> None:
        if self.fired or self.disabled:
            return
        self.fired = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._on_fire()

    def disable(self) -> None:
        self.disabled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class JobCancellation:
    """First-to-fire-wins combinator over the cancellation sources."""

    def __init__(self) -> None:
        self.source: CompletionSource | None = None
        self._callbacks: list[Callable[[CompletionSource], None]] = []

    @property
    def cancelled(self) -> bool:
        return self.source is not None

    def add_callback(self, callback: Callable[[CompletionSource], None]) -> None:
        self._callbacks.append(callback)

    def cancel(self, source: CompletionSource) -> bool:
        if self.source is not None:
            return False
        self.source = source
        for callback in self._callbacks:
            try:
                callback(source)
            except Exception:  # noqa: BLE001
                logger.exception("Cancellation callback failed (source=%s)", source.value)
        return True


__all__ = ["CompletionSource", "Deadline", "JobCancellation"]
