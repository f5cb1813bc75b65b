"""Durable job bookkeeping: completed job records and processed mention ids."""

from __future__ import annotations

import asyncio
import logging
import threading

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from runtime_utils.models import CompletedJob
from runtime_utils.models import ProcessedMention
from runtime_utils.schemas import CompletedJobRecord

logger = logging.getLogger(__name__)


class CompletedJobStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _save_sync(self, record: CompletedJobRecord) -> None:
        with self._session_factory() as db:
            db.add(
                CompletedJob(
                    external_id=record.external_id,
                    title=record.title,
                    started_at=record.started_at,
                    duration_seconds=record.duration_seconds,
                    record_json=record.model_dump_json(),
                )
            )
            db.commit()

    def _try_get_sync(self, external_id: str) -> CompletedJobRecord | None:
        with self._session_factory() as db:
            entry = db.get(CompletedJob, external_id)
            if entry is None:
                return None
            try:
                return CompletedJobRecord.model_validate_json(entry.record_json)
            except ValueError:
                logger.exception("Failed to load completed job record for %s", external_id)
                raise

    async def save(self, record: CompletedJobRecord) -> None:
        await asyncio.to_thread(self._save_sync, record)

    async def try_get(self, external_id: str) -> CompletedJobRecord | None:
        return await asyncio.to_thread(self._try_get_sync, external_id)


class ProcessedMentionStore:
    """Seen-set of comment ids that were already handled by the mention poller."""

    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._session_factory = session_factory
        self._seen: set[int] = set()
        self._lock = threading.Lock()

    async def try_add(self, comment_id: int) -> bool:
        """Record ``comment_id``. Returns False if it was seen before."""
        return await asyncio.to_thread(self._try_add_sync, comment_id)

    def _try_add_sync(self, comment_id: int) -> bool:
        with self._lock:
            if comment_id in self._seen:
                return False
            self._seen.add(comment_id)

        if self._session_factory is None:
            return True

        with self._session_factory() as db:
            db.add(ProcessedMention(comment_id=comment_id))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True


__all__ = ["CompletedJobStore", "ProcessedMentionStore"]
