"""Operator channel: short Discord messages about things a human should look at."""

from __future__ import annotations

import logging

import httpx

from runtime_utils.config import Settings
from runtime_utils.config import get_settings
from runtime_utils.services.background import spawn_background

logger = logging.getLogger(__name__)

# Discord rejects messages over 2000 characters
_MAX_CONTENT = 1900


async def _post_discord(webhook_url: str, content: str) -> None:
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.post(webhook_url, json={"content": content})
            if resp.status_code >= 300:
                logger.warning("Discord webhook returned %s: %s", resp.status_code, resp.text)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Discord webhook error: %s", exc)


class OpsAlerts:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _webhook_url(self) -> str | None:
        if self._settings.testing or not self._settings.discord_enable_alerts:
            return None
        return self._settings.discord_webhook_url or None

    async def send(self, content: str, exc: BaseException | None = None) -> None:
        """Log and forward ``content`` to Discord. Never raises."""
        if exc is not None:
            logger.error("%s: %s", content, exc, exc_info=exc)
            content = f"{content}\n```\n{exc!r}\n```"
        else:
            logger.warning(content)

        url = self._webhook_url()
        if not url:
            return

        if len(content) > _MAX_CONTENT:
            content = content[: _MAX_CONTENT - 3] + "..."

        spawn_background(_post_discord(url, content), description="ops-alert")


__all__ = ["OpsAlerts"]
