"""
Tests for outgoing delivery - webhook_hub/domain/services/outgoing_service.py

HTTP is served by httpx.MockTransport; private-network blocking is turned
off for the delivery tests and exercised on its own.
"""
import json

import httpx
import pytest

from webhook_hub.core.circuit_breaker import CircuitState
from webhook_hub.core.exceptions import NotFoundException, UnsafeTargetURLError
from webhook_hub.core.instrumentation import OUTGOING_EVENT_DELIVERED, OUTGOING_EVENT_FAILED
from webhook_hub.db.models.outgoing_event import OutgoingEventStatus
from webhook_hub.domain.services.outgoing_service import (
    DeliveryOutcome,
    HttpxDeliveryTransport,
    OutgoingDeliveryService,
    canonical_json,
    ensure_safe_target,
    sign_payload,
)
from tests.conftest import START_TIME, stripe_signature

TARGET = "https://partner.example.com/hooks/orders"


class MockEndpoint:
    """Records requests and answers with queued status codes"""

    def __init__(self, *status_codes: int):
        self.status_codes = list(status_codes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.status_codes.pop(0) if self.status_codes else 200
        return httpx.Response(status, text=f"status {status}")


def _service(db_session, runtime, handler) -> OutgoingDeliveryService:
    transport = HttpxDeliveryTransport(
        block_private_networks=False,
        transport=httpx.MockTransport(handler),
    )
    return OutgoingDeliveryService(db_session, runtime, transport=transport)


@pytest.fixture
def emitted(runtime) -> list:
    events = []
    runtime.instrumentation.subscribe(lambda name, fields: events.append((name, fields)))
    return events


class TestSigning:

    @pytest.mark.unit
    def test_canonical_json_is_stable(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'

    @pytest.mark.unit
    def test_sign_payload_format(self):
        """Same "{ts}.{body}" shape the timestamped incoming schemes use"""
        body = b'{"a":1}'
        assert sign_payload("secret", body, 1700000000) == stripe_signature("secret", body, 1700000000)


class TestEnqueue:

    @pytest.mark.integration
    async def test_enqueue_stores_and_schedules(self, db_session, runtime, scheduler):
        service = _service(db_session, runtime, MockEndpoint())
        event = await service.enqueue("partner", "order.created", {"order_id": 1}, path="orders")

        assert event.status == OutgoingEventStatus.PENDING
        assert event.target_url == TARGET
        assert scheduler.deliveries == [(event.id, 0)]

    @pytest.mark.integration
    async def test_unknown_endpoint(self, db_session, runtime):
        service = _service(db_session, runtime, MockEndpoint())
        with pytest.raises(NotFoundException):
            await service.enqueue("nobody", "order.created", {})


class TestProcess:

    @pytest.mark.integration
    async def test_delivered(self, db_session, runtime, emitted):
        endpoint = MockEndpoint(200)
        service = _service(db_session, runtime, endpoint)
        event = await service.enqueue("partner", "order.created", {"order_id": 1}, path="orders")

        assert await service.process(event.id) == DeliveryOutcome.DELIVERED
        assert event.status == OutgoingEventStatus.DELIVERED
        assert event.attempt_count == 1
        assert event.response_code == 200
        assert event.delivered_at is not None
        assert [name for name, _ in emitted] == [OUTGOING_EVENT_DELIVERED]

        [request] = endpoint.requests
        assert str(request.url) == TARGET
        assert json.loads(request.content) == {"order_id": 1}
        assert request.headers["X-Webhook-Event"] == "order.created"
        assert request.headers["X-Webhook-Id"] == str(event.id)
        timestamp = int(START_TIME)
        assert request.headers["X-Webhook-Timestamp"] == str(timestamp)
        assert request.headers["X-Webhook-Signature"] == sign_payload("outgoing-secret", request.content, timestamp)

    @pytest.mark.integration
    async def test_client_error_fails_without_retry(self, db_session, runtime, scheduler):
        service = _service(db_session, runtime, MockEndpoint(422))
        event = await service.enqueue("partner", "order.created", {})
        scheduler.deliveries.clear()

        assert await service.process(event.id) == DeliveryOutcome.FAILED
        assert event.status == OutgoingEventStatus.FAILED
        assert event.error_message == "HTTP 422"
        assert scheduler.deliveries == []
        assert runtime.circuit_breaker.failure_count(event.target_url) == 0

    @pytest.mark.integration
    async def test_server_error_schedules_retry(self, db_session, runtime, scheduler, emitted):
        service = _service(db_session, runtime, MockEndpoint(503))
        event = await service.enqueue("partner", "order.created", {})
        scheduler.deliveries.clear()

        assert await service.process(event.id) == DeliveryOutcome.RETRY_SCHEDULED
        assert event.status == OutgoingEventStatus.PENDING
        assert event.response_code == 503
        assert scheduler.deliveries == [(event.id, 10)]
        assert runtime.circuit_breaker.failure_count(event.target_url) == 1
        name, fields = emitted[-1]
        assert name == OUTGOING_EVENT_FAILED
        assert fields["retrying"] is True

    @pytest.mark.integration
    async def test_transport_error_is_retryable(self, db_session, runtime, scheduler):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = _service(db_session, runtime, refuse)
        event = await service.enqueue("partner", "order.created", {})
        scheduler.deliveries.clear()

        assert await service.process(event.id) == DeliveryOutcome.RETRY_SCHEDULED
        assert "connection refused" in event.error_message
        assert event.response_code is None

    @pytest.mark.integration
    async def test_attempts_exhausted(self, db_session, runtime, scheduler):
        runtime.endpoint("partner").circuit_breaker_enabled = False
        service = _service(db_session, runtime, MockEndpoint(500, 500, 500))
        event = await service.enqueue("partner", "order.created", {})
        scheduler.deliveries.clear()

        outcomes = [await service.process(event.id) for _ in range(3)]

        assert outcomes == [
            DeliveryOutcome.RETRY_SCHEDULED,
            DeliveryOutcome.RETRY_SCHEDULED,
            DeliveryOutcome.FAILED,
        ]
        assert [delay for _, delay in scheduler.deliveries] == [10, 20]
        assert event.status == OutgoingEventStatus.FAILED
        assert event.attempt_count == 3

    @pytest.mark.integration
    async def test_open_circuit_defers_without_network_call(self, db_session, runtime, scheduler, clock):
        """Threshold 2: two 500s open the breaker, the third attempt is not sent"""
        endpoint = MockEndpoint(500, 500, 200)
        service = _service(db_session, runtime, endpoint)
        event = await service.enqueue("partner", "order.created", {})

        await service.process(event.id)
        await service.process(event.id)
        assert runtime.circuit_breaker.state(event.target_url) == CircuitState.OPEN
        scheduler.deliveries.clear()

        clock.advance(15)
        assert await service.process(event.id) == DeliveryOutcome.CIRCUIT_OPEN
        assert len(endpoint.requests) == 2
        assert event.status == OutgoingEventStatus.PENDING
        assert event.attempt_count == 2
        assert scheduler.deliveries == [(event.id, 45)]

        clock.advance(45)
        assert await service.process(event.id) == DeliveryOutcome.DELIVERED
        assert runtime.circuit_breaker.state(event.target_url) == CircuitState.CLOSED

    @pytest.mark.integration
    async def test_not_pending_is_skipped(self, db_session, runtime):
        endpoint = MockEndpoint(200)
        service = _service(db_session, runtime, endpoint)
        event = await service.enqueue("partner", "order.created", {})

        await service.process(event.id)
        assert await service.process(event.id) == DeliveryOutcome.SKIPPED
        assert len(endpoint.requests) == 1

    @pytest.mark.integration
    async def test_unknown_event(self, db_session, runtime):
        with pytest.raises(NotFoundException):
            await _service(db_session, runtime, MockEndpoint()).process(424242)

    @pytest.mark.integration
    async def test_unsafe_target_fails_terminally(self, db_session, runtime, scheduler):
        runtime.endpoint("partner").base_url = "http://127.0.0.1:8080/hooks"
        service = OutgoingDeliveryService(
            db_session,
            runtime,
            transport=HttpxDeliveryTransport(block_private_networks=True, transport=httpx.MockTransport(MockEndpoint())),
        )
        event = await service.enqueue("partner", "order.created", {})
        scheduler.deliveries.clear()

        assert await service.process(event.id) == DeliveryOutcome.FAILED
        assert "blocked address" in event.error_message
        assert scheduler.deliveries == []


class TestEnsureSafeTarget:

    @pytest.mark.unit
    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/hook",
        "http://10.0.0.5/hook",
        "http://192.168.1.1/hook",
        "http://169.254.169.254/latest/meta-data",
        "http://[::1]/hook",
        "http://0.0.0.0/hook",
    ])
    async def test_blocked_addresses(self, url):
        with pytest.raises(UnsafeTargetURLError):
            await ensure_safe_target(url)

    @pytest.mark.unit
    @pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "http:///nohost"])
    async def test_bad_scheme_or_host(self, url):
        with pytest.raises(UnsafeTargetURLError):
            await ensure_safe_target(url)

    @pytest.mark.unit
    async def test_public_literal_address_allowed(self):
        await ensure_safe_target("https://93.184.216.34/hook")
