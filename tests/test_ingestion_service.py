"""
Tests for the ingestion entry point - webhook_hub/domain/services/ingestion_service.py

The "acme" provider from conftest signs with the Stripe scheme using
secret "s3cr3t" and is reached with token "tok_acme".
"""
import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.instrumentation import (
    INCOMING_EVENT_RECEIVED,
    RATE_LIMIT_EXCEEDED,
    SIGNATURE_FAILED,
    SIGNATURE_VERIFIED,
)
from webhook_hub.db.models.incoming_event import DedupState, IncomingEvent
from webhook_hub.db.models.incoming_event_action import IncomingEventAction
from webhook_hub.domain.provider_config import ProviderConfig
from webhook_hub.domain.services.ingestion_service import (
    IngestionService,
    IngestStatus,
    RejectReason,
)
from tests.conftest import ACME_SECRET, ACME_TOKEN, event_body, stripe_headers


async def _count(db: AsyncSession, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


@pytest.fixture
def emitted(runtime) -> list:
    events = []
    runtime.instrumentation.subscribe(lambda name, fields: events.append((name, fields)))
    return events


@pytest.fixture
def service(db_session, runtime) -> IngestionService:
    return IngestionService(db_session, runtime)


def _signed(clock, body: bytes, secret: str = ACME_SECRET) -> dict:
    return stripe_headers(secret, body, int(clock.now))


class TestEndToEnd:

    @pytest.mark.integration
    async def test_accept_then_duplicate(self, db_session, service, clock):
        """Same signed request twice: one event, second answer is a duplicate"""
        body = event_body("evt_1", "x")
        headers = _signed(clock, body)

        first = await service.ingest("acme", ACME_TOKEN, body, headers)
        assert first.status == IngestStatus.ACCEPTED
        assert first.dedup_state == DedupState.UNIQUE
        assert first.event_id is not None

        second = await service.ingest("acme", ACME_TOKEN, body, headers)
        assert second.status == IngestStatus.DUPLICATE
        assert second.dedup_state == DedupState.DUPLICATE
        assert second.event_id == first.event_id

        assert await _count(db_session, IncomingEvent) == 1

    @pytest.mark.integration
    async def test_duplicate_does_not_dispatch_again(self, db_session, service, runtime, scheduler, clock):
        runtime.action_registry.register("acme", "x", "notify")
        body = event_body("evt_1", "x")
        headers = _signed(clock, body)

        await service.ingest("acme", ACME_TOKEN, body, headers)
        await service.ingest("acme", ACME_TOKEN, body, headers)

        assert len(scheduler.actions) == 1
        assert await _count(db_session, IncomingEventAction) == 1

    @pytest.mark.integration
    async def test_event_is_stored_with_context(self, db_session, service, clock):
        body = event_body("evt_7", "charge.succeeded", amount=100)
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body), request_id="req-123")

        event = await db_session.get(IncomingEvent, result.event_id)
        assert event.provider == "acme"
        assert event.external_id == "evt_7"
        assert event.event_type == "charge.succeeded"
        assert event.payload["amount"] == 100
        assert "Stripe-Signature" in event.headers
        assert event.metadata_["payload_size"] == len(body)
        assert event.metadata_["verifier"] == "stripe"
        assert event.request_id == "req-123"

    @pytest.mark.integration
    async def test_emits_verified_and_received(self, service, clock, emitted):
        body = event_body()
        await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))

        names = [name for name, _ in emitted]
        assert names == [SIGNATURE_VERIFIED, INCOMING_EVENT_RECEIVED]
        assert emitted[1][1]["dedup_state"] == "unique"


class TestRejections:

    @pytest.mark.integration
    async def test_unknown_provider(self, service, clock):
        body = event_body()
        result = await service.ingest("nobody", ACME_TOKEN, body, _signed(clock, body))
        assert result.rejected
        assert result.reason == RejectReason.UNKNOWN_PROVIDER

    @pytest.mark.integration
    async def test_inactive_provider(self, service, runtime, clock):
        runtime.provider("acme").active = False
        body = event_body()
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.reason == RejectReason.PROVIDER_INACTIVE

    @pytest.mark.integration
    async def test_invalid_token(self, service, clock):
        body = event_body()
        result = await service.ingest("acme", "tok_wrong", body, _signed(clock, body))
        assert result.reason == RejectReason.INVALID_TOKEN

    @pytest.mark.integration
    async def test_rate_limited(self, db_session, service, runtime, clock, emitted):
        runtime.provider("acme").rate_limit_requests = 2

        results = []
        for n in range(3):
            body = event_body(f"evt_{n}")
            results.append(await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body)))

        assert [r.status for r in results] == [IngestStatus.ACCEPTED, IngestStatus.ACCEPTED, IngestStatus.REJECTED]
        assert results[2].reason == RejectReason.RATE_LIMITED
        assert results[2].retry_after == pytest.approx(60)
        assert RATE_LIMIT_EXCEEDED in [name for name, _ in emitted]
        assert await _count(db_session, IncomingEvent) == 2

    @pytest.mark.integration
    async def test_payload_too_large(self, service, runtime, clock):
        runtime.provider("acme").max_payload_size_bytes = 16
        body = event_body("evt_with_a_long_id")
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.reason == RejectReason.PAYLOAD_TOO_LARGE

    @pytest.mark.integration
    async def test_invalid_signature(self, db_session, service, clock, emitted):
        body = event_body()
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body, secret="wrong"))
        assert result.reason == RejectReason.INVALID_SIGNATURE
        assert [name for name, _ in emitted] == [SIGNATURE_FAILED]
        assert await _count(db_session, IncomingEvent) == 0

    @pytest.mark.integration
    async def test_stale_stripe_timestamp_fails_signature(self, service, clock):
        body = event_body()
        headers = stripe_headers(ACME_SECRET, body, int(clock.now) - 301)
        result = await service.ingest("acme", ACME_TOKEN, body, headers)
        assert result.reason == RejectReason.INVALID_SIGNATURE

    @pytest.mark.integration
    async def test_invalid_json(self, service, clock):
        body = b"{not json"
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.reason == RejectReason.INVALID_JSON

    @pytest.mark.integration
    async def test_json_array_is_invalid(self, service, clock):
        body = b'[{"id": "evt_1"}]'
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.reason == RejectReason.INVALID_JSON

    @pytest.mark.integration
    async def test_deeply_nested_json_is_invalid(self, db_session, service, runtime):
        """Valid JSON nested past the interpreter's recursion limit is rejected, not a crash"""
        runtime.register_provider(ProviderConfig(name="open", token="tok_open", verifier="base"))
        body = b'{"id": "evt_n", "x": ' + b"[" * 100_000 + b"]" * 100_000 + b"}"

        result = await service.ingest("open", "tok_open", body, {})

        assert result.reason == RejectReason.INVALID_JSON
        assert await _count(db_session, IncomingEvent) == 0

    @pytest.mark.integration
    async def test_event_id_longer_than_column(self, db_session, service, clock):
        body = event_body("e" * 256)
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.reason == RejectReason.INVALID_EVENT_ID
        assert await _count(db_session, IncomingEvent) == 0

    @pytest.mark.integration
    async def test_event_type_longer_than_column(self, service, clock):
        body = event_body("evt_1", "t" * 256)
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.reason == RejectReason.INVALID_EVENT_TYPE

    @pytest.mark.integration
    async def test_event_id_at_column_limit_is_accepted(self, service, clock):
        body = event_body("e" * 255)
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.status == IngestStatus.ACCEPTED

    @pytest.mark.integration
    async def test_missing_event_id(self, service, clock):
        body = json.dumps({"type": "x"}).encode()
        result = await service.ingest("acme", ACME_TOKEN, body, _signed(clock, body))
        assert result.reason == RejectReason.MISSING_EVENT_ID

    @pytest.mark.integration
    async def test_timestamp_outside_window_without_signing(self, db_session, service, runtime, clock):
        """A provider without a secret still gets replay protection from its timestamp header"""
        runtime.register_provider(ProviderConfig(name="open", token="tok_open", verifier="base"))
        body = event_body()

        stale = await service.ingest("open", "tok_open", body, {"X-Webhook-Timestamp": str(int(clock.now) - 301)})
        assert stale.reason == RejectReason.TIMESTAMP_OUT_OF_WINDOW

        fresh = await service.ingest("open", "tok_open", body, {"X-Webhook-Timestamp": str(int(clock.now))})
        assert fresh.status == IngestStatus.ACCEPTED

    @pytest.mark.integration
    async def test_disabled_checks(self, service, runtime, clock):
        runtime.register_provider(
            ProviderConfig(
                name="open",
                token="tok_open",
                verifier="base",
                timestamp_tolerance_seconds=0,
                max_payload_size_bytes=0,
                rate_limit_requests=0,
            )
        )
        body = event_body(padding="x" * 2_000_000)
        headers = {"X-Webhook-Timestamp": str(int(clock.now) - 86400)}
        result = await service.ingest("open", "tok_open", body, headers)
        assert result.status == IngestStatus.ACCEPTED
