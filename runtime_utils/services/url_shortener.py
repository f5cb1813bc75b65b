from __future__ import annotations

from typing import Protocol


class UrlShortener(Protocol):
    async def create(self, source: str, url: str) -> str:
        """Return a short public URL that redirects to ``url``."""
        ...


class PassthroughUrlShortener:
    """Used when no shortening service is configured."""

    async def create(self, source: str, url: str) -> str:
        return url
