from __future__ import annotations

from typing import Iterator
from typing import MutableMapping


class JobMetadata(MutableMapping[str, str]):
    """Insertion-ordered, case-insensitive string map handed to the remote runner."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[str, str]] = {}

    def add(self, key: str, value: str) -> None:
        """Insert a new key. Raises ``KeyError`` if it already exists."""
        if key.lower() in self._items:
            raise KeyError(f"Metadata key '{key}' already exists")
        self._items[key.lower()] = (key, value)

    def __getitem__(self, key: str) -> str:
        return self._items[key.lower()][1]

    def __setitem__(self, key: str, value: str) -> None:
        existing = self._items.get(key.lower())
        self._items[key.lower()] = (existing[0] if existing else key, value)

    def __delitem__(self, key: str) -> None:
        del self._items[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return (original for original, _ in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._items

    def to_dict(self) -> dict[str, str]:
        return {key: value for key, value in self._items.values()}
