"""
Dedup Service - the single authority on "has this event been seen"

Optimistic approach: INSERT first inside a savepoint, and let the unique
constraint on (provider, external_id) decide. Concurrent deliveries of the
same event all end up pointing at one row.
"""
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.exceptions import AppException, ValidationException
from webhook_hub.core.logging import get_logger
from webhook_hub.db.models.incoming_event import DedupState, IncomingEvent, IncomingEventStatus

logger = get_logger(__name__)


class DedupService:
    """Create-or-return for incoming events"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, provider: str, external_id: str) -> IncomingEvent | None:
        result = await self.db.execute(
            select(IncomingEvent).where(
                IncomingEvent.provider == provider,
                IncomingEvent.external_id == external_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_or_create(
        self,
        provider: str,
        external_id: str,
        event_type: str,
        payload: Any,
        headers: dict | None = None,
        metadata: dict | None = None,
        request_id: str | None = None,
    ) -> tuple[IncomingEvent, DedupState]:
        """
        Return the canonical event for (provider, external_id).

        Returns:
            (event, UNIQUE) when this call created the row,
            (event, DUPLICATE) when it already existed

        Raises:
            ValidationException: external_id is empty
        """
        if not external_id:
            raise ValidationException("Event id is required for deduplication", field="external_id")

        event = IncomingEvent(
            provider=provider,
            external_id=external_id,
            event_type=event_type,
            payload=payload,
            headers=headers,
            metadata_=metadata,
            request_id=request_id,
            dedup_state=DedupState.UNIQUE,
            status=IncomingEventStatus.RECEIVED,
        )

        try:
            async with self.db.begin_nested():
                self.db.add(event)
            await self.db.commit()
            logger.info(
                "Incoming event created",
                extra_data={"provider": provider, "external_id": external_id, "event_id": event.id}
            )
            return event, DedupState.UNIQUE
        except IntegrityError:
            pass  # already stored, fall through to the existing row

        existing = await self.get(provider, external_id)
        if existing is None:
            # the conflicting row vanished between INSERT and SELECT
            raise AppException(
                f"Incoming event {provider}:{external_id} conflicted but could not be loaded",
                details={"provider": provider, "external_id": external_id},
            )

        existing.dedup_state = DedupState.DUPLICATE
        await self.db.commit()

        logger.info(
            "Duplicate incoming event",
            extra_data={"provider": provider, "external_id": external_id, "event_id": existing.id}
        )
        return existing, DedupState.DUPLICATE

    async def mark_replayed(self, event: IncomingEvent) -> IncomingEvent:
        """Operator-triggered redelivery. Never chosen automatically."""
        event.dedup_state = DedupState.REPLAYED
        await self.db.commit()
        logger.info(
            "Incoming event marked as replayed",
            extra_data={"provider": event.provider, "external_id": event.external_id, "event_id": event.id}
        )
        return event
