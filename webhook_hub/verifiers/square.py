"""
Square signature scheme

Base64 HMAC-SHA256 over ``notification_url + body``. The URL must match
exactly what was registered with Square, so it comes from the provider's
configured ``webhook_url``.
"""
from typing import Any, Mapping

from webhook_hub.core.security import extract_header, generate_hmac, secure_compare
from webhook_hub.verifiers.base import BaseVerifier, Headers, as_bytes


class SquareVerifier(BaseVerifier):
    name = "square"
    SIGNATURE_HEADER = "X-Square-Signature"
    SIGNATURE_HMACSHA256_HEADER = "X-Square-Hmacsha256-Signature"

    def verify_signature(
        self,
        payload: str | bytes,
        headers: Headers,
        secret: str | None,
        tolerance: int | None = None,
    ) -> bool:
        signature = extract_header(headers, self.SIGNATURE_HMACSHA256_HEADER, self.SIGNATURE_HEADER)

        if not secret:
            # authentication is disabled for this provider
            self.log_skipped()
            return True

        if not signature:
            self.log_rejection("missing signature header")
            return False

        if not self.webhook_url:
            self.log_rejection("notification url not configured")
            return False

        signed_payload = self.webhook_url.encode("utf-8") + as_bytes(payload)
        expected = generate_hmac(secret, signed_payload, encoding="base64")

        if not secure_compare(signature, expected):
            self.log_rejection("signature mismatch")
            return False
        return True

    def extract_timestamp(self, headers: Headers) -> int | None:
        return None

    def extract_event_id(self, payload: Mapping[str, Any]) -> str | None:
        value = payload.get("event_id")
        return str(value) if value else None

    def extract_event_type(self, payload: Mapping[str, Any]) -> str:
        value = payload.get("type")
        return str(value) if value else "webhook.received"
