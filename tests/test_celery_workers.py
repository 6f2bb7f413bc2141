"""
Tests for Celery Workers - webhook_hub/workers/tasks.py and scheduler.py

Covers:
- run_incoming_action against the shared test session
- deliver_outgoing_event (not found, unconfigured endpoint)
- archive_old_events
- event loop management
- CeleryWorkScheduler countdowns
"""
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.db.models.incoming_event import IncomingEvent
from webhook_hub.db.models.incoming_event_action import ActionStatus, IncomingEventAction
from webhook_hub.domain.services.action_dispatch_service import ActionDispatcher
from webhook_hub.domain.services.dedup_service import DedupService
from webhook_hub.domain.services.outgoing_service import OutgoingDeliveryService
from webhook_hub.workers.scheduler import CeleryWorkScheduler


@contextmanager
def _run_tasks_in_test(db_session: AsyncSession, runtime):
    """
    Run Celery task bodies inside the test's event loop.

    run_async is replaced by identity so the task returns its coroutine,
    which the test awaits; sessions and the runtime come from fixtures.
    """
    @asynccontextmanager
    async def _session():
        yield db_session

    with patch("webhook_hub.workers.tasks.run_async", side_effect=lambda coro: coro), \
            patch("webhook_hub.workers.tasks.get_task_session", new=_session), \
            patch("webhook_hub.workers.tasks.get_runtime", return_value=runtime):
        yield


async def _pending_record(db: AsyncSession, runtime) -> IncomingEventAction:
    event, _ = await DedupService(db).find_or_create("acme", "evt_1", "x", {"id": "evt_1"})
    dispatcher = ActionDispatcher(db, runtime.action_registry, runtime.scheduler)
    [record] = await dispatcher.create_records(event, runtime.action_registry.actions_for("acme", "x"))
    return record


# ============================================================================
# run_incoming_action
# ============================================================================


class TestRunIncomingAction:

    @pytest.mark.integration
    async def test_runs_pending_record(self, db_session: AsyncSession, runtime) -> None:
        calls = []
        runtime.action_registry.register("acme", "x", "notify", handler=lambda event: calls.append(event.id))
        record = await _pending_record(db_session, runtime)

        from webhook_hub.workers.tasks import run_incoming_action

        with _run_tasks_in_test(db_session, runtime):
            result = await run_incoming_action(record.id, worker_id="worker-1")

        assert result == {"record_id": record.id, "outcome": "success"}
        assert calls == [record.incoming_event_id]
        assert record.status == ActionStatus.PROCESSED

    @pytest.mark.integration
    async def test_missing_record_returns_error(self, db_session: AsyncSession, runtime) -> None:
        from webhook_hub.workers.tasks import run_incoming_action

        with _run_tasks_in_test(db_session, runtime):
            result = await run_incoming_action(999)

        assert result == {"error": "Action record not found"}

    @pytest.mark.integration
    async def test_task_uses_runtime_from_factory(self, db_session: AsyncSession, monkeypatch) -> None:
        """A worker with no injected runtime runs actions from the RUNTIME_FACTORY registry"""
        from tests.conftest import FACTORY_CALLS
        from webhook_hub.core.config import settings
        from webhook_hub.runtime import get_runtime, set_runtime
        from webhook_hub.workers.tasks import run_incoming_action

        @asynccontextmanager
        async def _session():
            yield db_session

        monkeypatch.setattr(settings, "RUNTIME_FACTORY", "tests.conftest:notify_runtime")
        FACTORY_CALLS.clear()
        set_runtime(None)
        try:
            runtime = get_runtime()
            record = await _pending_record(db_session, runtime)

            with patch("webhook_hub.workers.tasks.run_async", side_effect=lambda coro: coro), \
                    patch("webhook_hub.workers.tasks.get_task_session", new=_session):
                result = await run_incoming_action(record.id)
        finally:
            set_runtime(None)

        assert result == {"record_id": record.id, "outcome": "success"}
        assert FACTORY_CALLS == [record.incoming_event_id]
        assert record.status == ActionStatus.PROCESSED


# ============================================================================
# deliver_outgoing_event
# ============================================================================


class TestDeliverOutgoingEvent:

    @pytest.mark.integration
    async def test_missing_event_returns_error(self, db_session: AsyncSession, runtime) -> None:
        from webhook_hub.workers.tasks import deliver_outgoing_event

        with _run_tasks_in_test(db_session, runtime):
            result = await deliver_outgoing_event(999)

        assert result == {"error": "Outgoing event not found"}

    @pytest.mark.integration
    async def test_endpoint_removed_after_enqueue_fails(self, db_session: AsyncSession, runtime) -> None:
        """No network call is made when the endpoint is gone"""
        event = await OutgoingDeliveryService(db_session, runtime).enqueue("partner", "order.created", {})
        del runtime.endpoints["partner"]

        from webhook_hub.workers.tasks import deliver_outgoing_event

        with _run_tasks_in_test(db_session, runtime):
            result = await deliver_outgoing_event(event.id)

        assert result == {"event_id": event.id, "outcome": "failed"}


# ============================================================================
# archive_old_events
# ============================================================================


class TestArchiveOldEvents:

    @pytest.mark.integration
    async def test_archives_only_old_events(self, db_session: AsyncSession, runtime) -> None:
        now = datetime.now(timezone.utc)
        db_session.add_all([
            IncomingEvent(provider="acme", external_id="old", event_type="x", payload={},
                          created_at=now - timedelta(days=120)),
            IncomingEvent(provider="acme", external_id="new", event_type="x", payload={},
                          created_at=now - timedelta(days=1)),
        ])
        await db_session.commit()

        from webhook_hub.workers.tasks import archive_old_events

        with _run_tasks_in_test(db_session, runtime):
            result = await archive_old_events(retention_days=90)

        assert result == {"incoming_events": 1, "outgoing_events": 0}

        archived = await db_session.execute(
            select(IncomingEvent.external_id).where(IncomingEvent.archived_at.is_not(None))
        )
        assert archived.scalars().all() == ["old"]


# ============================================================================
# Event loop management
# ============================================================================


class TestEventLoopManagement:
    """Tests for get_event_loop and run_async"""

    def test_get_event_loop_creates_and_closes(self) -> None:
        from webhook_hub.workers.tasks import get_event_loop

        with get_event_loop() as loop:
            assert loop is not None
            assert loop.is_running() is False

        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        """run_async runs a coroutine to completion and returns its result"""
        from webhook_hub.workers.tasks import run_async

        async def _coro():
            return 42

        assert run_async(_coro()) == 42


# ============================================================================
# CeleryWorkScheduler
# ============================================================================


class TestCeleryWorkScheduler:

    @pytest.mark.unit
    def test_schedule_action_immediately(self) -> None:
        with patch("webhook_hub.workers.tasks.run_incoming_action.apply_async") as apply_async:
            CeleryWorkScheduler().schedule_action(7)
        apply_async.assert_called_once_with(args=[7], countdown=None)

    @pytest.mark.unit
    def test_schedule_action_with_delay(self) -> None:
        with patch("webhook_hub.workers.tasks.run_incoming_action.apply_async") as apply_async:
            CeleryWorkScheduler().schedule_action(7, delay_seconds=5)
        apply_async.assert_called_once_with(args=[7], countdown=5)

    @pytest.mark.unit
    def test_schedule_delivery_with_delay(self) -> None:
        with patch("webhook_hub.workers.tasks.deliver_outgoing_event.apply_async") as apply_async:
            CeleryWorkScheduler().schedule_delivery(3, delay_seconds=30)
        apply_async.assert_called_once_with(args=[3], countdown=30)
