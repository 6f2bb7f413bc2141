"""
Outgoing Event Model - locally generated event delivered to a remote endpoint
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SQLEnum, JSON, Index

from webhook_hub.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutgoingEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


class OutgoingEvent(Base):
    """Outgoing webhook with delivery attempt tracking"""

    __tablename__ = "outgoing_events"

    id = Column(Integer, primary_key=True, index=True)

    endpoint = Column(String(100), nullable=False)
    event_type = Column(String(255), nullable=False)
    target_url = Column(String(2048), nullable=False)
    payload = Column(JSON, nullable=False)
    headers = Column(JSON, nullable=True)

    status = Column(SQLEnum(OutgoingEventStatus), nullable=False, default=OutgoingEventStatus.PENDING, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    # Last response
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)

    delivered_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_outgoing_events_created_archived", "created_at", "archived_at"),
    )
