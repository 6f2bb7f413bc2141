"""
Celery-backed WorkScheduler
"""
from webhook_hub.core.logging import get_logger

logger = get_logger(__name__)


class CeleryWorkScheduler:
    """Schedules engine work as Celery tasks with a countdown"""

    def schedule_action(self, record_id: int, delay_seconds: float = 0) -> None:
        from webhook_hub.workers.tasks import run_incoming_action

        run_incoming_action.apply_async(args=[record_id], countdown=delay_seconds or None)
        logger.debug(
            "Action scheduled",
            extra_data={"record_id": record_id, "delay_seconds": delay_seconds}
        )

    def schedule_delivery(self, event_id: int, delay_seconds: float = 0) -> None:
        from webhook_hub.workers.tasks import deliver_outgoing_event

        deliver_outgoing_event.apply_async(args=[event_id], countdown=delay_seconds or None)
        logger.debug(
            "Delivery scheduled",
            extra_data={"event_id": event_id, "delay_seconds": delay_seconds}
        )
