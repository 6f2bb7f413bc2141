"""
Stripe signature scheme

``Stripe-Signature: t=<unix>,v1=<hex>,v0=<hex>``. The signed payload is
``"{t}.{body}"``. Several candidate signatures may be present during secret
rotation; any one matching is enough.
"""
from typing import Any, Mapping

from webhook_hub.core.security import (
    extract_header,
    generate_hmac,
    header_values,
    parse_kv_header,
    parse_timestamp,
    secure_compare,
)
from webhook_hub.verifiers.base import BaseVerifier, Headers, as_bytes

SIGNATURE_SCHEMES = ("v1", "v0")


class StripeVerifier(BaseVerifier):
    name = "stripe"
    SIGNATURE_HEADER = "Stripe-Signature"

    def _parse(self, headers: Headers) -> tuple[str | None, list[str]]:
        parsed = parse_kv_header(extract_header(headers, self.SIGNATURE_HEADER))
        timestamps = header_values(parsed, "t")
        signatures = [sig for scheme in SIGNATURE_SCHEMES for sig in header_values(parsed, scheme)]
        return (timestamps[0] if timestamps else None), signatures

    def verify_signature(
        self,
        payload: str | bytes,
        headers: Headers,
        secret: str | None,
        tolerance: int | None = None,
    ) -> bool:
        if not secret:
            self.log_rejection("no signing secret configured")
            return False

        raw_timestamp, signatures = self._parse(headers)
        if not raw_timestamp or not signatures:
            self.log_rejection("missing timestamp or signatures")
            return False

        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None:
            self.log_rejection("invalid timestamp")
            return False
        if not self.within_tolerance(timestamp, tolerance):
            self.log_rejection("timestamp outside tolerance", timestamp=timestamp)
            return False

        signed_payload = f"{raw_timestamp}.".encode("utf-8") + as_bytes(payload)
        expected = generate_hmac(secret, signed_payload)

        # no short-circuit: every candidate is compared
        matched = False
        for candidate in signatures:
            if secure_compare(candidate, expected):
                matched = True
        if not matched:
            self.log_rejection("signature mismatch", candidates=len(signatures))
        return matched

    def extract_timestamp(self, headers: Headers) -> int | None:
        raw_timestamp, _ = self._parse(headers)
        return parse_timestamp(raw_timestamp)

    def extract_event_id(self, payload: Mapping[str, Any]) -> str | None:
        value = payload.get("id")
        return str(value) if value else None

    def extract_event_type(self, payload: Mapping[str, Any]) -> str:
        value = payload.get("type")
        return str(value) if value else "webhook.received"
