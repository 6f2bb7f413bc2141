"""
Outgoing Delivery Service

Signs and sends locally generated events to configured endpoints. Each
attempt is gated by the circuit breaker (keyed by target URL):
- 2xx: delivered, breaker success
- 4xx: failed for good, breaker untouched (the endpoint is healthy, the request is not)
- 5xx / transport error: breaker failure, retried after the endpoint's delay schedule
"""
import asyncio
import enum
import ipaddress
import json
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol
from urllib.parse import urlsplit

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.config import settings
from webhook_hub.core.exceptions import (
    DeliveryTransportError,
    ErrorCode,
    NotFoundException,
    UnsafeTargetURLError,
)
from webhook_hub.core.instrumentation import OUTGOING_EVENT_DELIVERED, OUTGOING_EVENT_FAILED
from webhook_hub.core.logging import get_logger
from webhook_hub.core.security import generate_hmac
from webhook_hub.db.models.outgoing_event import OutgoingEvent, OutgoingEventStatus
from webhook_hub.domain.provider_config import OutgoingEndpoint
from webhook_hub.domain.services.action_dispatch_service import truncate
from webhook_hub.runtime import Runtime

logger = get_logger(__name__)


class DeliveryOutcome(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CIRCUIT_OPEN = "circuit_open"
    SKIPPED = "skipped"  # not pending, or claimed by another worker


@dataclass(frozen=True)
class DeliveryResponse:
    status_code: int
    body: str
    elapsed_ms: int


class DeliveryTransport(Protocol):
    async def deliver(self, url: str, body: bytes, headers: Mapping[str, str]) -> DeliveryResponse:
        """Send one request. Raises DeliveryTransportError when no response arrives."""


def canonical_json(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def sign_payload(secret: str, body: bytes | str, timestamp: int) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}.{body}"``"""
    raw = body if isinstance(body, bytes) else body.encode("utf-8")
    return generate_hmac(secret, f"{timestamp}.".encode("utf-8") + raw)


def _is_blocked_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


async def ensure_safe_target(url: str) -> None:
    """
    Reject non-HTTP(S) URLs and hosts resolving to private, loopback or
    link-local addresses.

    Raises:
        UnsafeTargetURLError
    """
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise UnsafeTargetURLError(url, f"scheme '{parts.scheme}' is not allowed")
    host = parts.hostname
    if not host:
        raise UnsafeTargetURLError(url, "missing host")

    try:
        addresses = [ipaddress.ip_address(host)]
    except ValueError:
        port = parts.port or (443 if parts.scheme == "https" else 80)
        try:
            infos = await asyncio.get_running_loop().getaddrinfo(host, port)
        except OSError as e:
            raise DeliveryTransportError(url, f"cannot resolve host: {e}") from e
        addresses = [ipaddress.ip_address(info[4][0]) for info in infos]

    for address in addresses:
        if _is_blocked_address(address):
            raise UnsafeTargetURLError(url, f"host resolves to blocked address {address}")


class HttpxDeliveryTransport:
    """DeliveryTransport over httpx.AsyncClient; redirects are not followed"""

    def __init__(
        self,
        connect_timeout: float = settings.OUTGOING_CONNECT_TIMEOUT_SECONDS,
        read_timeout: float = settings.OUTGOING_READ_TIMEOUT_SECONDS,
        block_private_networks: bool = settings.OUTGOING_BLOCK_PRIVATE_NETWORKS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self.block_private_networks = block_private_networks
        self._transport = transport

    async def deliver(self, url: str, body: bytes, headers: Mapping[str, str]) -> DeliveryResponse:
        if self.block_private_networks:
            await ensure_safe_target(url)

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                response = await client.post(url, content=body, headers=dict(headers))
        except httpx.TimeoutException as e:
            raise DeliveryTransportError(url, f"timeout: {e}", error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT) from e
        except httpx.HTTPError as e:
            raise DeliveryTransportError(url, str(e) or type(e).__name__) from e

        return DeliveryResponse(
            status_code=response.status_code,
            body=response.text,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutgoingDeliveryService:
    """Queue and deliver outgoing events"""

    def __init__(self, db: AsyncSession, runtime: Runtime, transport: DeliveryTransport | None = None):
        self.db = db
        self.runtime = runtime
        self.transport = transport or HttpxDeliveryTransport()

    async def get(self, event_id: int) -> OutgoingEvent | None:
        result = await self.db.execute(select(OutgoingEvent).where(OutgoingEvent.id == event_id))
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        endpoint_name: str,
        event_type: str,
        payload: Any,
        path: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> OutgoingEvent:
        """
        Store a pending outgoing event and schedule its first attempt.

        Raises:
            NotFoundException: unknown endpoint
        """
        endpoint = self.runtime.endpoint(endpoint_name)
        if endpoint is None:
            raise NotFoundException("OutgoingEndpoint", endpoint_name)

        event = OutgoingEvent(
            endpoint=endpoint_name,
            event_type=event_type,
            target_url=endpoint.url_for(path),
            payload=payload,
            headers=headers or {},
            status=OutgoingEventStatus.PENDING,
            attempt_count=0,
        )
        self.db.add(event)
        await self.db.commit()

        self.runtime.scheduler.schedule_delivery(event.id, 0)
        logger.info(
            "Outgoing event queued",
            extra_data={"event_id": event.id, "endpoint": endpoint_name, "event_type": event_type}
        )
        return event

    async def _claim(self, event: OutgoingEvent) -> bool:
        """pending -> processing as one conditional update"""
        result = await self.db.execute(
            update(OutgoingEvent)
            .where(OutgoingEvent.id == event.id, OutgoingEvent.status == OutgoingEventStatus.PENDING)
            .values(status=OutgoingEventStatus.PROCESSING, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await self.db.commit()
        await self.db.refresh(event)
        return True

    def _build_headers(self, event: OutgoingEvent, endpoint: OutgoingEndpoint, body: bytes) -> dict[str, str]:
        timestamp = int(self.runtime.clock())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.APP_NAME,
            "X-Webhook-Event": event.event_type,
            "X-Webhook-Id": str(event.id),
            **endpoint.default_headers,
            **(event.headers or {}),
            endpoint.timestamp_header: str(timestamp),
        }
        if endpoint.signing_secret:
            headers[endpoint.signing_header] = sign_payload(endpoint.signing_secret, body, timestamp)
        return headers

    async def process(self, event_id: int) -> DeliveryOutcome:
        """
        Make one delivery attempt.

        Raises:
            NotFoundException: no outgoing event with that id
        """
        event = await self.get(event_id)
        if event is None:
            raise NotFoundException("OutgoingEvent", event_id)

        if not await self._claim(event):
            logger.info(
                "Outgoing event not pending, skipping",
                extra_data={"event_id": event_id, "status": event.status.value if event.status else None}
            )
            return DeliveryOutcome.SKIPPED

        endpoint = self.runtime.endpoint(event.endpoint)
        if endpoint is None:
            return await self._fail(event, f"Endpoint '{event.endpoint}' is not configured")

        breaker = self.runtime.circuit_breaker
        circuit_key = event.target_url
        if endpoint.circuit_breaker_enabled and not breaker.allowed(
            circuit_key,
            endpoint.circuit_failure_threshold,
            endpoint.circuit_cooldown_seconds,
        ):
            retry_after = breaker.retry_after(circuit_key, endpoint.circuit_cooldown_seconds)
            delay = max(1, math.ceil(retry_after))
            event.status = OutgoingEventStatus.PENDING
            await self.db.commit()
            self.runtime.scheduler.schedule_delivery(event.id, delay)
            logger.warning(
                "Circuit open, delivery deferred",
                extra_data={"event_id": event.id, "target_url": circuit_key, "delay_seconds": delay}
            )
            return DeliveryOutcome.CIRCUIT_OPEN

        body = canonical_json(event.payload)
        headers = self._build_headers(event, endpoint, body)

        event.attempt_count = (event.attempt_count or 0) + 1
        event.last_attempt_at = _utcnow()
        await self.db.commit()

        try:
            response = await self.transport.deliver(event.target_url, body, headers)
        except UnsafeTargetURLError as e:
            return await self._fail(event, e.message)
        except DeliveryTransportError as e:
            return await self._fail_retryable(event, endpoint, e.message)

        event.response_code = response.status_code
        event.response_body = truncate(response.body, settings.RESPONSE_BODY_MAX_LENGTH)
        event.response_time_ms = response.elapsed_ms

        if 200 <= response.status_code < 300:
            event.status = OutgoingEventStatus.DELIVERED
            event.delivered_at = _utcnow()
            event.error_message = None
            await self.db.commit()
            if endpoint.circuit_breaker_enabled:
                breaker.record_success(circuit_key)
            self.runtime.instrumentation.emit(
                OUTGOING_EVENT_DELIVERED,
                event_id=event.id,
                endpoint=event.endpoint,
                status_code=response.status_code,
                attempt=event.attempt_count,
                response_time_ms=response.elapsed_ms,
            )
            logger.info(
                "Outgoing event delivered",
                extra_data={"event_id": event.id, "status_code": response.status_code}
            )
            return DeliveryOutcome.DELIVERED

        error = f"HTTP {response.status_code}"
        if 400 <= response.status_code < 500:
            return await self._fail(event, error)
        return await self._fail_retryable(event, endpoint, error)

    async def _fail(self, event: OutgoingEvent, error: str) -> DeliveryOutcome:
        event.status = OutgoingEventStatus.FAILED
        event.error_message = truncate(error, settings.ERROR_MESSAGE_MAX_LENGTH)
        await self.db.commit()
        self.runtime.instrumentation.emit(
            OUTGOING_EVENT_FAILED,
            event_id=event.id,
            endpoint=event.endpoint,
            error=event.error_message,
            attempt=event.attempt_count,
            retrying=False,
        )
        logger.error(
            "Outgoing event failed",
            extra_data={"event_id": event.id, "error": event.error_message, "attempt": event.attempt_count}
        )
        return DeliveryOutcome.FAILED

    async def _fail_retryable(self, event: OutgoingEvent, endpoint: OutgoingEndpoint, error: str) -> DeliveryOutcome:
        if endpoint.circuit_breaker_enabled:
            self.runtime.circuit_breaker.record_failure(event.target_url, endpoint.circuit_failure_threshold, error)

        if event.attempt_count >= endpoint.max_attempts:
            return await self._fail(event, error)

        delay = endpoint.delay_for_attempt(event.attempt_count - 1)
        event.status = OutgoingEventStatus.PENDING
        event.error_message = truncate(error, settings.ERROR_MESSAGE_MAX_LENGTH)
        await self.db.commit()
        self.runtime.scheduler.schedule_delivery(event.id, delay)

        self.runtime.instrumentation.emit(
            OUTGOING_EVENT_FAILED,
            event_id=event.id,
            endpoint=event.endpoint,
            error=event.error_message,
            attempt=event.attempt_count,
            retrying=True,
        )
        logger.warning(
            "Outgoing delivery failed, retry scheduled",
            extra_data={"event_id": event.id, "error": event.error_message, "delay_seconds": delay}
        )
        return DeliveryOutcome.RETRY_SCHEDULED
