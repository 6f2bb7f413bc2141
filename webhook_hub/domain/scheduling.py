"""
Work scheduling contract

The engine never runs deferred work itself; it hands record ids to a
scheduler. workers/scheduler.py provides the Celery implementation.
"""
from typing import Protocol


class WorkScheduler(Protocol):
    def schedule_action(self, record_id: int, delay_seconds: float = 0) -> None:
        """Run the action execution record ``record_id`` after ``delay_seconds``"""

    def schedule_delivery(self, event_id: int, delay_seconds: float = 0) -> None:
        """Attempt delivery of outgoing event ``event_id`` after ``delay_seconds``"""
