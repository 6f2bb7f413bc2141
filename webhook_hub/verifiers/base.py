"""
Verifier interface and the generic HMAC verifier

A verifier answers four questions about one delivery: is the signature
valid, what is the event id, what is the event type, and when was it sent.
Malformed input is a failed verification, never an exception.
"""
import time
from typing import Any, Callable, Mapping

from webhook_hub.core.logging import get_logger
from webhook_hub.core.security import (
    extract_header,
    generate_hmac,
    parse_timestamp,
    secure_compare,
    timestamp_within_tolerance,
)

logger = get_logger(__name__)

Headers = Mapping[str, Any]


def as_bytes(payload: str | bytes) -> bytes:
    return payload if isinstance(payload, bytes) else payload.encode("utf-8")


class BaseVerifier:
    """
    Generic verifier.

    Expects ``X-Webhook-Signature``: hex HMAC-SHA256 of the raw body, or of
    ``"{timestamp}.{body}"`` when ``X-Webhook-Timestamp`` is sent. This is
    the format outgoing deliveries are signed with.
    """

    name = "base"
    SIGNATURE_HEADER = "X-Webhook-Signature"
    TIMESTAMP_HEADER = "X-Webhook-Timestamp"

    def __init__(self, webhook_url: str | None = None, clock: Callable[[], float] = time.time):
        self.webhook_url = webhook_url
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def within_tolerance(self, timestamp: int | None, tolerance: int | None) -> bool:
        """Always true when tolerance is disabled (None or 0)"""
        if not tolerance:
            return True
        return timestamp_within_tolerance(timestamp, tolerance, now=self.now())

    def log_rejection(self, reason: str, **fields: Any) -> None:
        logger.warning(
            "Signature verification failed",
            extra_data={"verifier": self.name, "reason": reason, **fields}
        )

    def log_skipped(self) -> None:
        logger.warning(
            "Signature verification skipped: no signing secret configured",
            extra_data={"verifier": self.name}
        )

    def verify_signature(
        self,
        payload: str | bytes,
        headers: Headers,
        secret: str | None,
        tolerance: int | None = None,
    ) -> bool:
        if not secret:
            self.log_skipped()
            return True

        signature = extract_header(headers, self.SIGNATURE_HEADER)
        if not signature:
            self.log_rejection("missing signature header")
            return False

        body = as_bytes(payload)
        raw_timestamp = extract_header(headers, self.TIMESTAMP_HEADER)
        if raw_timestamp:
            timestamp = parse_timestamp(raw_timestamp)
            if timestamp is None:
                self.log_rejection("invalid timestamp header")
                return False
            if not self.within_tolerance(timestamp, tolerance):
                self.log_rejection("timestamp outside tolerance", timestamp=timestamp)
                return False
            body = f"{raw_timestamp}.".encode("utf-8") + body

        expected = generate_hmac(secret, body)
        if not secure_compare(signature, expected):
            self.log_rejection("signature mismatch")
            return False
        return True

    def extract_timestamp(self, headers: Headers) -> int | None:
        return parse_timestamp(extract_header(headers, self.TIMESTAMP_HEADER))

    def extract_event_id(self, payload: Mapping[str, Any]) -> str | None:
        value = payload.get("id") or payload.get("event_id")
        return str(value) if value else None

    def extract_event_type(self, payload: Mapping[str, Any]) -> str:
        value = payload.get("type") or payload.get("event_type")
        return str(value) if value else "webhook.received"
