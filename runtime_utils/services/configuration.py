"""Runtime configuration flags.

String key/value pairs persisted in ``config_entries`` and cached in memory.
Operators flip these without restarting the service (authorized users, VM
sizes, feature switches).
"""

from __future__ import annotations

import logging
import threading
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from runtime_utils.models import ConfigEntry

logger = logging.getLogger(__name__)

T = TypeVar("T", bool, int, str)

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


def _coerce(raw: str, default: T) -> T:
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True  # type: ignore[return-value]
        if lowered in _FALSE_VALUES:
            return False  # type: ignore[return-value]
        return default
    if isinstance(default, int):
        try:
            return int(raw.strip())  # type: ignore[return-value]
        except ValueError:
            return default
    return raw  # type: ignore[return-value]


class ConfigurationService:
    """Key/value flags with an in-memory cache in front of the database.

    Pass ``session_factory=None`` for a purely in-memory store (tests, local demos).
    """

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()
        self._loaded = session_factory is None

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        """Read every entry into the cache. Blocking; call it off the event loop."""
        if self._loaded:
            return
        with self._lock:
            if self._loaded:
                return
            with self._session_factory() as db:  # type: ignore[misc]
                for entry in db.scalars(select(ConfigEntry)):
                    self._values[entry.key] = entry.value
            self._loaded = True
            logger.info("Loaded %d configuration entries", len(self._values))

    def try_get(self, key: str) -> str | None:
        self.load()
        with self._lock:
            return self._values.get(key)

    def get(self, key: str, default: T) -> T:
        raw = self.try_get(key)
        if raw is None:
            return default
        return _coerce(raw, default)

    def set(self, key: str, value: str | bool | int) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        value = str(value)

        self.load()
        if self._session_factory is not None:
            with self._session_factory() as db:
                entry = db.get(ConfigEntry, key)
                if entry is None:
                    db.add(ConfigEntry(key=key, value=value))
                else:
                    entry.value = value
                db.commit()

        with self._lock:
            self._values[key] = value

    def remove(self, key: str) -> bool:
        self.load()
        if self._session_factory is not None:
            with self._session_factory() as db:
                entry = db.get(ConfigEntry, key)
                if entry is not None:
                    db.delete(entry)
                    db.commit()

        with self._lock:
            return self._values.pop(key, None) is not None


__all__ = ["ConfigurationService"]
