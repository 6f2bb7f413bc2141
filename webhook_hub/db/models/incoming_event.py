"""
Incoming Event Model - one ingested webhook occurrence

(provider, external_id) is unique: concurrent deliveries of the same event
resolve to one row. Rows are archived, never deleted while action records
reference them.
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Index, UniqueConstraint

from webhook_hub.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DedupState(str, enum.Enum):
    UNIQUE = "unique"
    DUPLICATE = "duplicate"
    REPLAYED = "replayed"


class IncomingEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    PARTIALLY_PROCESSED = "partially_processed"
    FAILED = "failed"


class IncomingEvent(Base):
    """Webhook received from a provider"""

    __tablename__ = "incoming_events"

    id = Column(Integer, primary_key=True, index=True)

    provider = Column(String(100), nullable=False)
    external_id = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=False)

    payload = Column(JSON, nullable=False)
    headers = Column(JSON, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    request_id = Column(String(64), nullable=True)

    dedup_state = Column(SQLEnum(DedupState), nullable=False, default=DedupState.UNIQUE)
    status = Column(SQLEnum(IncomingEventStatus), nullable=False, default=IncomingEventStatus.RECEIVED, index=True)

    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_incoming_events_provider_external_id"),
        Index("ix_incoming_events_created_archived", "created_at", "archived_at"),
    )

    def __repr__(self) -> str:
        return f"<IncomingEvent {self.provider}:{self.external_id} {self.status}>"
