"""
Progress records for long-running exports.

Records live in the shared cache under ``export:status:{export_id}`` and
expire after ``ttl_seconds``. State only moves forward:

    PENDING -> PROCESSING -> COMPLETED | FAILED

PENDING may jump straight to a terminal state. Terminal records never change.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from .cache import KeyValueCache
from .cache_keys import CACHE_TTL, status_key
from .models import ExportState, ExportStatus

logger = logging.getLogger(__name__)

_STATE_RANK = {
    ExportState.PENDING: 0,
    ExportState.PROCESSING: 1,
    ExportState.COMPLETED: 2,
    ExportState.FAILED: 2,
}

DEFAULT_STALE_MINUTES = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExportStatusTracker:
    def __init__(
        self,
        cache: KeyValueCache,
        ttl_seconds: int = CACHE_TTL["EXPORT_STATUS"],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cache = cache
        self._ttl = ttl_seconds
        self._clock = clock

    async def _save(self, status: ExportStatus) -> bool:
        return await self._cache.set(status_key(status.export_id), status.model_dump(mode="json"), self._ttl)

    async def get(self, export_id: str) -> Optional[ExportStatus]:
        data = await self._cache.get(status_key(export_id))
        if data is None:
            return None
        try:
            return ExportStatus.model_validate(data)
        except ValidationError as exc:
            logger.error(f"Discarding malformed status record for export {export_id}: {exc}")
            return None

    async def create(
        self, export_id: str, owner_id: Optional[str] = None, message: Optional[str] = None
    ) -> Optional[ExportStatus]:
        """
        Register a PENDING record.

        Returns:
            The new record, or None if it could not be persisted
        """
        now = self._clock()
        status = ExportStatus(
            export_id=export_id,
            state=ExportState.PENDING,
            progress=0,
            message=message or "Export queued",
            last_updated=now,
            owner_id=owner_id,
            created_at=now,
        )
        if not await self._save(status):
            logger.warning(f"Could not persist status record for export {export_id}")
            return None
        return status

    async def _apply(self, export_id: str, changes: Dict[str, Any]) -> Optional[ExportStatus]:
        current = await self.get(export_id)
        if current is None:
            logger.warning(f"Status update for unknown export {export_id}")
            return None
        if current.is_terminal:
            logger.debug(f"Ignoring update for export {export_id} in terminal state {current.state.value}")
            return current

        new_state = changes.get("state")
        if new_state is not None and _STATE_RANK[new_state] < _STATE_RANK[current.state]:
            logger.warning(
                f"Rejected status transition {current.state.value} -> {new_state.value} for export {export_id}"
            )
            return current

        if changes.get("progress") is not None:
            changes["progress"] = max(0, min(100, int(changes["progress"])))
        changes = {field: value for field, value in changes.items() if value is not None}
        changes["last_updated"] = self._clock()

        updated = current.model_copy(update=changes)
        await self._save(updated)
        return updated

    async def update(
        self,
        export_id: str,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        state: Optional[ExportState] = None,
        estimated_time_remaining_seconds: Optional[int] = None,
    ) -> Optional[ExportStatus]:
        return await self._apply(
            export_id,
            {
                "progress": progress,
                "message": message,
                "state": state,
                "estimated_time_remaining_seconds": estimated_time_remaining_seconds,
            },
        )

    async def fail(self, export_id: str, error_message: str) -> Optional[ExportStatus]:
        return await self._apply(
            export_id,
            {
                "state": ExportState.FAILED,
                "message": "Export failed",
                "error": error_message,
                "estimated_time_remaining_seconds": 0,
            },
        )

    async def complete(self, export_id: str, message: Optional[str] = None) -> Optional[ExportStatus]:
        return await self._apply(
            export_id,
            {
                "state": ExportState.COMPLETED,
                "progress": 100,
                "message": message or "Export completed",
                "estimated_time_remaining_seconds": 0,
            },
        )

    def is_record_stale(self, status: ExportStatus, max_age_minutes: int = DEFAULT_STALE_MINUTES) -> bool:
        """
        Return True if a running export has not been updated for ``max_age_minutes``.

        Terminal records are never stale: COMPLETED and FAILED are final, so
        their age says nothing about a stuck pipeline.
        """
        if status.is_terminal:
            return False
        return self._clock() - status.last_updated > timedelta(minutes=max_age_minutes)

    async def is_stale(self, export_id: str, max_age_minutes: int = DEFAULT_STALE_MINUTES) -> bool:
        status = await self.get(export_id)
        return status is not None and self.is_record_stale(status, max_age_minutes)
