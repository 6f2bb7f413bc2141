"""
Action claim/dispatch state machine

Record states: pending -> processing -> processed | failed, and
failed -> pending through reset_for_retry. Every write to a record is a
single conditional UPDATE guarded by lock_version, so two workers racing
for the same record produce one winner and one ActionLockConflictError.
"""
import asyncio
import enum
import inspect
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.config import settings
from webhook_hub.core.exceptions import (
    ActionExecutionError,
    ActionLockConflictError,
    ErrorCode,
    NotFoundException,
)
from webhook_hub.core.instrumentation import (
    ACTION_COMPLETED,
    ACTION_FAILED,
    ACTION_STARTED,
    Instrumentation,
)
from webhook_hub.core.logging import get_logger
from webhook_hub.db.models.incoming_event import IncomingEvent, IncomingEventStatus
from webhook_hub.db.models.incoming_event_action import ActionStatus, IncomingEventAction
from webhook_hub.domain.action_registry import ActionConfig, ActionRegistry
from webhook_hub.domain.scheduling import WorkScheduler
from webhook_hub.domain.services.action_lookup import ActionLookup

logger = get_logger(__name__)


class ActionOutcome(str, enum.Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"
    CONFLICT = "conflict"  # another worker owns the record; nothing was changed


@dataclass(frozen=True)
class ExecutionResult:
    outcome: ActionOutcome
    error: str | None = None


def truncate(text: str | None, limit: int) -> str | None:
    if text is None:
        return None
    return text[:limit]


def describe_error(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return str(error)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionExecutor:
    """
    Runs the handler registered for an action id.

    Handlers are called as ``handler(event)`` and may be sync or async;
    sync handlers run in a worker thread.
    A FatalActionError (or any ActionExecutionError with retryable=False)
    is fatal, as is a missing handler. Anything else raised is retryable.
    """

    def __init__(self, registry: ActionRegistry):
        self.registry = registry

    async def execute(self, action_id: str, event: IncomingEvent, attempt: int) -> ExecutionResult:
        handler = self.registry.handler_for(action_id)
        if handler is None:
            return ExecutionResult(ActionOutcome.FATAL_FAILURE, f"No handler registered for action '{action_id}'")

        try:
            if inspect.iscoroutinefunction(handler):
                result = handler(event)
            else:
                # plain callables run off the event loop so a blocking handler cannot stall it
                result = await asyncio.to_thread(handler, event)
            if inspect.isawaitable(result):
                await result
        except ActionExecutionError as e:
            outcome = ActionOutcome.RETRYABLE_FAILURE if e.retryable else ActionOutcome.FATAL_FAILURE
            return ExecutionResult(outcome, describe_error(e))
        except Exception as e:
            logger.warning(
                "Action handler raised",
                extra_data={"action_id": action_id, "attempt": attempt, "error": str(e)},
                exc_info=True
            )
            return ExecutionResult(ActionOutcome.RETRYABLE_FAILURE, describe_error(e))

        return ExecutionResult(ActionOutcome.SUCCESS)


class ActionExecutionService:
    """Version-checked transitions on IncomingEventAction records"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, record_id: int) -> IncomingEventAction | None:
        result = await self.db.execute(
            select(IncomingEventAction).where(IncomingEventAction.id == record_id)
        )
        return result.scalar_one_or_none()

    async def _versioned_update(
        self,
        record: IncomingEventAction,
        values: dict[str, Any],
        *conditions,
        worker_id: str | None = None,
    ) -> IncomingEventAction:
        expected = record.lock_version
        result = await self.db.execute(
            update(IncomingEventAction)
            .where(
                IncomingEventAction.id == record.id,
                IncomingEventAction.lock_version == expected,
                *conditions,
            )
            .values(lock_version=expected + 1, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ActionLockConflictError(record.id, expected, worker_id)

        await self.db.commit()
        await self.db.refresh(record)
        return record

    async def acquire_lock(self, record: IncomingEventAction, worker_id: str) -> IncomingEventAction:
        """
        Claim a pending, unclaimed record for ``worker_id``.

        Raises:
            ActionLockConflictError: the version moved, or the record is
                already claimed or no longer pending
        """
        return await self._versioned_update(
            record,
            {
                "status": ActionStatus.PROCESSING,
                "locked_at": _utcnow(),
                "locked_by": worker_id,
            },
            IncomingEventAction.locked_at.is_(None),
            IncomingEventAction.status == ActionStatus.PENDING,
            worker_id=worker_id,
        )

    async def release_lock(self, record: IncomingEventAction) -> IncomingEventAction:
        return await self._versioned_update(record, {"locked_at": None, "locked_by": None})

    async def increment_attempts(self, record: IncomingEventAction) -> IncomingEventAction:
        return await self._versioned_update(
            record,
            {
                "attempt_count": IncomingEventAction.attempt_count + 1,
                "last_attempt_at": _utcnow(),
            },
        )

    async def mark_processed(self, record: IncomingEventAction) -> IncomingEventAction:
        return await self._versioned_update(
            record,
            {
                "status": ActionStatus.PROCESSED,
                "error_message": None,
                "locked_at": None,
                "locked_by": None,
            },
        )

    async def mark_failed(self, record: IncomingEventAction, error: BaseException | str) -> IncomingEventAction:
        """Record the failure and release the claim. Does not count an attempt."""
        return await self._versioned_update(
            record,
            {
                "status": ActionStatus.FAILED,
                "error_message": truncate(describe_error(error), settings.ERROR_MESSAGE_MAX_LENGTH),
                "last_attempt_at": _utcnow(),
                "locked_at": None,
                "locked_by": None,
            },
        )

    async def reset_for_retry(self, record: IncomingEventAction) -> IncomingEventAction:
        return await self._versioned_update(
            record,
            {
                "status": ActionStatus.PENDING,
                "locked_at": None,
                "locked_by": None,
            },
        )

    async def recalculate_event_status(self, event: IncomingEvent) -> IncomingEventStatus:
        """
        Derive the event status from its records: all processed -> processed,
        all failed -> failed, any failed -> partially_processed, else processing.
        """
        result = await self.db.execute(
            select(IncomingEventAction.status).where(IncomingEventAction.incoming_event_id == event.id)
        )
        statuses = [row[0] for row in result.all()]
        if not statuses:
            return event.status

        if all(status == ActionStatus.PROCESSED for status in statuses):
            new_status = IncomingEventStatus.PROCESSED
        elif all(status == ActionStatus.FAILED for status in statuses):
            new_status = IncomingEventStatus.FAILED
        elif any(status == ActionStatus.FAILED for status in statuses):
            new_status = IncomingEventStatus.PARTIALLY_PROCESSED
        else:
            new_status = IncomingEventStatus.PROCESSING

        event.status = new_status
        await self.db.commit()
        return new_status


class ActionDispatcher:
    """Creates execution records for an event and runs them"""

    def __init__(
        self,
        db: AsyncSession,
        registry: ActionRegistry,
        scheduler: WorkScheduler,
        instrumentation: Instrumentation | None = None,
        executor: ActionExecutor | None = None,
    ):
        self.db = db
        self.registry = registry
        self.scheduler = scheduler
        self.instrumentation = instrumentation or Instrumentation()
        self.executor = executor or ActionExecutor(registry)
        self.records = ActionExecutionService(db)
        self.lookup = ActionLookup(db, registry)

    async def create_records(
        self,
        event: IncomingEvent,
        configs: list[ActionConfig],
    ) -> list[IncomingEventAction]:
        """
        One pending record per config, in dispatch order. Async configs go
        to the scheduler; sync configs run inline before returning.
        """
        if not configs:
            logger.info(
                "No actions configured for event",
                extra_data={"provider": event.provider, "event_type": event.event_type, "event_id": event.id}
            )
            return []

        records = []
        for config in configs:
            record = IncomingEventAction(
                incoming_event_id=event.id,
                action_id=config.action_id,
                priority=config.priority,
                status=ActionStatus.PENDING,
                attempt_count=0,
                lock_version=0,
            )
            self.db.add(record)
            records.append(record)

        event.status = IncomingEventStatus.PROCESSING
        await self.db.commit()

        for config, record in zip(configs, records):
            if config.is_async:
                self.scheduler.schedule_action(record.id, 0)
            else:
                await self.run(record.id)

        return records

    def _emit(self, name: str, record: IncomingEventAction, event: IncomingEvent, **fields: Any) -> None:
        self.instrumentation.emit(
            name,
            record_id=record.id,
            action_id=record.action_id,
            event_id=event.id,
            provider=event.provider,
            event_type=event.event_type,
            attempt=record.attempt_count,
            **fields,
        )

    async def run(self, record_id: int, worker_id: str | None = None) -> ActionOutcome:
        """
        Claim, execute and settle one record.

        Raises:
            NotFoundException: no record with that id
        """
        record = await self.records.get(record_id)
        if record is None:
            raise NotFoundException("IncomingEventAction", record_id, error_code=ErrorCode.ACTION_NOT_CONFIGURED)

        event = await self.db.get(IncomingEvent, record.incoming_event_id)
        worker_id = worker_id or uuid.uuid4().hex

        try:
            await self.records.acquire_lock(record, worker_id)
        except ActionLockConflictError as e:
            logger.info(
                "Action record already claimed",
                extra_data={"record_id": record_id, "worker_id": worker_id, "expected_version": e.expected_version}
            )
            return ActionOutcome.CONFLICT

        lookup = await self.lookup.resolve_action(event.provider, event.event_type, record.action_id)
        if not lookup.configs:
            reason = (
                f"Action '{record.action_id}' was removed"
                if lookup.is_removed
                else f"Action '{record.action_id}' is not configured"
            )
            await self.records.mark_failed(record, reason)
            self._emit(ACTION_FAILED, record, event, error=reason, retrying=False)
            await self.records.recalculate_event_status(event)
            logger.warning(
                "Action configuration missing at run time",
                extra_data={"record_id": record_id, "action_id": record.action_id, "source": lookup.source.value}
            )
            return ActionOutcome.FATAL_FAILURE

        config = lookup.configs[0]
        await self.records.increment_attempts(record)
        self._emit(ACTION_STARTED, record, event)

        started = time.monotonic()
        result = await self.executor.execute(record.action_id, event, record.attempt_count)
        duration = round(time.monotonic() - started, 4)

        if result.outcome == ActionOutcome.SUCCESS:
            await self.records.mark_processed(record)
            self._emit(ACTION_COMPLETED, record, event, duration_seconds=duration)
            await self.records.recalculate_event_status(event)
            return ActionOutcome.SUCCESS

        await self.records.mark_failed(record, result.error or "Action failed")

        retrying = (
            result.outcome == ActionOutcome.RETRYABLE_FAILURE
            and not record.max_attempts_reached(config.max_attempts)
        )
        self._emit(ACTION_FAILED, record, event, error=record.error_message, retrying=retrying)

        if retrying:
            # attempt_count already includes the attempt that just failed
            delay = config.delay_for_attempt(record.attempt_count - 1)
            await self.records.reset_for_retry(record)
            self.scheduler.schedule_action(record.id, delay)
            logger.info(
                "Action retry scheduled",
                extra_data={
                    "record_id": record.id,
                    "action_id": record.action_id,
                    "attempt": record.attempt_count,
                    "delay_seconds": delay,
                }
            )
        else:
            logger.error(
                "Action failed permanently",
                extra_data={
                    "record_id": record.id,
                    "action_id": record.action_id,
                    "attempt": record.attempt_count,
                    "error": record.error_message,
                }
            )

        await self.records.recalculate_event_status(event)
        return result.outcome
