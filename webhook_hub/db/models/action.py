"""
Action Model - persisted action configuration

The authoritative store consulted before the in-memory registry. A row
with deleted_at set is a logical removal and hides the registry fallback
for its (provider, event_type).
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, UniqueConstraint, Index

from webhook_hub.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Action(Base):
    """Stored binding of (provider, event_type) to an action"""

    __tablename__ = "actions"

    id = Column(Integer, primary_key=True, index=True)

    provider = Column(String(100), nullable=False)
    event_type = Column(String(255), nullable=False)
    action_id = Column(String(255), nullable=False)

    priority = Column(Integer, nullable=False, default=100)
    is_async = Column(Boolean, nullable=False, default=True)
    max_attempts = Column(Integer, nullable=False, default=5)
    retry_delays = Column(JSON, nullable=False, default=lambda: [30, 60, 300, 900, 3600])

    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_type", "action_id", name="uq_actions_provider_event_action"),
        Index("ix_actions_provider_event_type", "provider", "event_type"),
    )

    @property
    def removed(self) -> bool:
        return self.deleted_at is not None
