"""
Incoming Event Action Model - one (event, action) execution record

Claim fields (locked_at, locked_by) are only written through version-checked
conditional updates; see ActionExecutionService.
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum as SQLEnum, ForeignKey, Index, UniqueConstraint

from webhook_hub.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class IncomingEventAction(Base):
    """Execution state of one action against one incoming event"""

    __tablename__ = "incoming_event_actions"

    id = Column(Integer, primary_key=True, index=True)

    incoming_event_id = Column(
        Integer,
        ForeignKey("incoming_events.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    action_id = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False, default=100)

    status = Column(SQLEnum(ActionStatus), nullable=False, default=ActionStatus.PENDING, index=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    # Claim
    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String(255), nullable=True)
    lock_version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("incoming_event_id", "action_id", name="uq_incoming_event_actions_event_action"),
        Index("ix_incoming_event_actions_status_priority", "status", "priority"),
    )

    def max_attempts_reached(self, limit: int) -> bool:
        return (self.attempt_count or 0) >= limit

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None
