"""
Celery Application Configuration
"""
from celery import Celery
from celery.signals import worker_process_init

from webhook_hub.core.config import settings

celery_app = Celery(
    "webhook_hub",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["webhook_hub.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_routes={
        "webhook_hub.workers.tasks.run_incoming_action": {"queue": "webhook_hub_incoming"},
        "webhook_hub.workers.tasks.deliver_outgoing_event": {"queue": "webhook_hub_outgoing"},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "archive-old-events-daily": {
        "task": "webhook_hub.workers.tasks.archive_old_events",
        "schedule": 86400.0,  # 24 hours
    },
}


@worker_process_init.connect
def configure_worker_runtime(**kwargs) -> None:
    """Each worker process builds its runtime from RUNTIME_FACTORY before taking tasks"""
    from webhook_hub.runtime import configure_runtime
    configure_runtime()
