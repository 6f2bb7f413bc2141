"""
Archival Service - stamps archived_at on old incoming and outgoing events

Events are never deleted here: action records keep referencing them.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.config import settings
from webhook_hub.core.logging import get_logger, log_async_operation
from webhook_hub.db.models.incoming_event import IncomingEvent
from webhook_hub.db.models.outgoing_event import OutgoingEvent

logger = get_logger(__name__)


class ArchivalService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _archive_model(self, model, cutoff: datetime, batch_size: int, now: datetime) -> int:
        archived = 0
        while True:
            result = await self.db.execute(
                select(model.id)
                .where(model.created_at < cutoff, model.archived_at.is_(None))
                .order_by(model.id)
                .limit(batch_size)
            )
            ids = [row[0] for row in result.all()]
            if not ids:
                break

            await self.db.execute(
                update(model)
                .where(model.id.in_(ids))
                .values(archived_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            archived += len(ids)

            if len(ids) < batch_size:
                break
        return archived

    @log_async_operation("archive_old_events")
    async def archive_older_than(
        self,
        retention_days: int = settings.RETENTION_DAYS,
        batch_size: int = 1000,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Archive events created more than ``retention_days`` ago, in batches"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=retention_days)

        counts = {
            "incoming_events": await self._archive_model(IncomingEvent, cutoff, batch_size, now),
            "outgoing_events": await self._archive_model(OutgoingEvent, cutoff, batch_size, now),
        }
        logger.info(
            "Archived old events",
            extra_data={**counts, "retention_days": retention_days, "cutoff": cutoff.isoformat()}
        )
        return counts
