"""
Celery Tasks

The job substrate for the engine: each task opens its own session on a
fresh event loop and hands a record id to the matching service.
"""
import asyncio
from contextlib import contextmanager

from webhook_hub.workers.celery_app import celery_app
from webhook_hub.db.database import get_task_session
from webhook_hub.core.config import settings
from webhook_hub.core.exceptions import NotFoundException
from webhook_hub.core.logging import get_logger, set_correlation_id
from webhook_hub.domain.services.action_dispatch_service import ActionDispatcher
from webhook_hub.domain.services.archival_service import ArchivalService
from webhook_hub.domain.services.outgoing_service import OutgoingDeliveryService
from webhook_hub.runtime import get_runtime

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="webhook_hub.workers.tasks.run_incoming_action")
def run_incoming_action(record_id: int, worker_id: str | None = None):
    """Claim and execute one incoming event action record"""

    async def _run():
        runtime = get_runtime()
        async with get_task_session() as db:
            dispatcher = ActionDispatcher(
                db,
                runtime.action_registry,
                runtime.scheduler,
                instrumentation=runtime.instrumentation,
            )
            try:
                outcome = await dispatcher.run(record_id, worker_id=worker_id)
            except NotFoundException:
                logger.warning("Action record not found", extra_data={"record_id": record_id})
                return {"error": "Action record not found"}
            return {"record_id": record_id, "outcome": outcome.value}

    return run_async(_run())


@celery_app.task(name="webhook_hub.workers.tasks.deliver_outgoing_event")
def deliver_outgoing_event(event_id: int):
    """Make one delivery attempt for an outgoing event"""

    async def _deliver():
        runtime = get_runtime()
        async with get_task_session() as db:
            service = OutgoingDeliveryService(db, runtime)
            try:
                outcome = await service.process(event_id)
            except NotFoundException:
                logger.warning("Outgoing event not found", extra_data={"event_id": event_id})
                return {"error": "Outgoing event not found"}
            return {"event_id": event_id, "outcome": outcome.value}

    return run_async(_deliver())


@celery_app.task(name="webhook_hub.workers.tasks.archive_old_events")
def archive_old_events(retention_days: int | None = None, batch_size: int = 1000):
    """Archive incoming and outgoing events past the retention period"""

    async def _archive():
        async with get_task_session() as db:
            return await ArchivalService(db).archive_older_than(
                retention_days or settings.RETENTION_DAYS,
                batch_size=batch_size,
            )

    return run_async(_archive())
