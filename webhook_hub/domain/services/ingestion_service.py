"""
Ingestion Service - entry point for one incoming webhook

Checks run cheapest-first so unauthenticated traffic is turned away before
any crypto or storage work: provider lookup, token, rate limit, payload
size, signature, JSON, event id, timestamp window, then dedup. Only a
first-seen event gets action records.
"""
import enum
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from webhook_hub.core.exceptions import RateLimitExceededError
from webhook_hub.core.instrumentation import (
    INCOMING_EVENT_RECEIVED,
    RATE_LIMIT_EXCEEDED,
    SIGNATURE_FAILED,
    SIGNATURE_VERIFIED,
)
from webhook_hub.core.logging import get_correlation_id, get_logger
from webhook_hub.core.security import secure_compare
from webhook_hub.core.time_window import TimeWindowValidator
from webhook_hub.db.models.incoming_event import DedupState, IncomingEvent
from webhook_hub.domain.services.action_dispatch_service import ActionDispatcher
from webhook_hub.domain.services.action_lookup import ActionLookup
from webhook_hub.domain.services.dedup_service import DedupService
from webhook_hub.runtime import Runtime

logger = get_logger(__name__)

MAX_EXTERNAL_ID_LENGTH = IncomingEvent.__table__.c.external_id.type.length
MAX_EVENT_TYPE_LENGTH = IncomingEvent.__table__.c.event_type.type.length


class IngestStatus(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class RejectReason(str, enum.Enum):
    UNKNOWN_PROVIDER = "unknown_provider"
    PROVIDER_INACTIVE = "provider_inactive"
    INVALID_TOKEN = "invalid_token"
    RATE_LIMITED = "rate_limited"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_JSON = "invalid_json"
    MISSING_EVENT_ID = "missing_event_id"
    INVALID_EVENT_ID = "invalid_event_id"
    INVALID_EVENT_TYPE = "invalid_event_type"
    TIMESTAMP_OUT_OF_WINDOW = "timestamp_out_of_window"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    event_id: int | None = None
    dedup_state: DedupState | None = None
    reason: RejectReason | None = None
    message: str | None = None
    retry_after: float | None = None

    @property
    def rejected(self) -> bool:
        return self.status == IngestStatus.REJECTED


class IngestionService:
    """Authenticate, deduplicate and dispatch one webhook delivery"""

    def __init__(self, db: AsyncSession, runtime: Runtime):
        self.db = db
        self.runtime = runtime

    def _reject(self, provider: str, reason: RejectReason, message: str | None = None, **extra: Any) -> IngestResult:
        logger.warning(
            "Webhook rejected",
            extra_data={"provider": provider, "reason": reason.value, "detail": message}
        )
        return IngestResult(status=IngestStatus.REJECTED, reason=reason, message=message, **extra)

    async def ingest(
        self,
        provider: str,
        token: str,
        raw_body: bytes | str,
        headers: Mapping[str, Any],
        request_id: str | None = None,
    ) -> IngestResult:
        body = raw_body if isinstance(raw_body, bytes) else raw_body.encode("utf-8")
        instrumentation = self.runtime.instrumentation

        config = self.runtime.provider(provider)
        if config is None:
            return self._reject(provider, RejectReason.UNKNOWN_PROVIDER)

        if not config.active:
            return self._reject(provider, RejectReason.PROVIDER_INACTIVE)

        if not secure_compare(token, config.token):
            return self._reject(provider, RejectReason.INVALID_TOKEN)

        if config.rate_limiting_enabled:
            try:
                self.runtime.rate_limiter.record(provider, config.rate_limit_requests, config.rate_limit_period)
            except RateLimitExceededError as e:
                instrumentation.emit(
                    RATE_LIMIT_EXCEEDED,
                    provider=provider,
                    limit=config.rate_limit_requests,
                    period=config.rate_limit_period,
                )
                return self._reject(provider, RejectReason.RATE_LIMITED, e.message, retry_after=e.retry_after_seconds)

        if config.payload_size_limit_enabled and len(body) > config.max_payload_size_bytes:
            return self._reject(
                provider,
                RejectReason.PAYLOAD_TOO_LARGE,
                f"{len(body)} bytes exceeds {config.max_payload_size_bytes}",
            )

        verifier = self.runtime.verifier_for(provider)
        if not verifier.verify_signature(body, headers, config.signing_secret, config.timestamp_tolerance_seconds):
            instrumentation.emit(SIGNATURE_FAILED, provider=provider, verifier=verifier.name)
            return self._reject(provider, RejectReason.INVALID_SIGNATURE)
        instrumentation.emit(SIGNATURE_VERIFIED, provider=provider, verifier=verifier.name)

        try:
            payload = json.loads(body)
        except (ValueError, RecursionError) as e:
            # RecursionError: nesting deeper than the interpreter stack
            return self._reject(provider, RejectReason.INVALID_JSON, str(e))
        if not isinstance(payload, dict):
            return self._reject(provider, RejectReason.INVALID_JSON, "payload must be a JSON object")

        external_id = verifier.extract_event_id(payload)
        if not external_id:
            return self._reject(provider, RejectReason.MISSING_EVENT_ID)
        if len(external_id) > MAX_EXTERNAL_ID_LENGTH:
            return self._reject(
                provider,
                RejectReason.INVALID_EVENT_ID,
                f"event id longer than {MAX_EXTERNAL_ID_LENGTH} characters",
            )
        event_type = verifier.extract_event_type(payload)
        if len(event_type) > MAX_EVENT_TYPE_LENGTH:
            return self._reject(
                provider,
                RejectReason.INVALID_EVENT_TYPE,
                f"event type longer than {MAX_EVENT_TYPE_LENGTH} characters",
            )

        if config.timestamp_validation_enabled:
            timestamp = verifier.extract_timestamp(headers)
            if timestamp is not None:
                window = TimeWindowValidator(config.timestamp_tolerance_seconds, clock=self.runtime.clock)
                check = window.validate(timestamp)
                if not check.valid:
                    return self._reject(provider, RejectReason.TIMESTAMP_OUT_OF_WINDOW, check.error)

        event, dedup_state = await DedupService(self.db).find_or_create(
            provider=provider,
            external_id=external_id,
            event_type=event_type,
            payload=payload,
            headers={str(key): str(value) for key, value in headers.items()},
            metadata={
                "received_at": datetime.now(timezone.utc).isoformat(),
                "payload_size": len(body),
                "verifier": verifier.name,
            },
            request_id=request_id or get_correlation_id(),
        )

        instrumentation.emit(
            INCOMING_EVENT_RECEIVED,
            provider=provider,
            event_type=event_type,
            external_id=external_id,
            event_id=event.id,
            dedup_state=dedup_state.value,
        )

        if dedup_state == DedupState.DUPLICATE:
            return IngestResult(status=IngestStatus.DUPLICATE, event_id=event.id, dedup_state=dedup_state)

        configs = await ActionLookup(self.db, self.runtime.action_registry).actions_for(provider, event_type)
        dispatcher = ActionDispatcher(
            self.db,
            self.runtime.action_registry,
            self.runtime.scheduler,
            instrumentation=instrumentation,
        )
        await dispatcher.create_records(event, configs)

        logger.info(
            "Webhook accepted",
            extra_data={
                "provider": provider,
                "event_type": event_type,
                "event_id": event.id,
                "actions": len(configs),
            }
        )
        return IngestResult(status=IngestStatus.ACCEPTED, event_id=event.id, dedup_state=dedup_state)
