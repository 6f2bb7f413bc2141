"""
PayPal transmission headers

PayPal signs with a certificate chain rather than a shared secret. This
verifier checks the transmission headers and the timestamp window, then
hands the cryptographic check to an injected ``certificate_verifier``.
Without one, every delivery is rejected.
"""
import time
from typing import Any, Callable, Mapping

from webhook_hub.core.security import extract_header, parse_timestamp
from webhook_hub.verifiers.base import BaseVerifier, Headers

# (payload, headers, webhook_id) -> bool
CertificateVerifier = Callable[[bytes | str, Headers, str | None], bool]


class PaypalVerifier(BaseVerifier):
    name = "paypal"
    SIGNATURE_HEADER = "Paypal-Transmission-Sig"
    CERT_URL_HEADER = "Paypal-Cert-Url"
    TRANSMISSION_ID_HEADER = "Paypal-Transmission-Id"
    TRANSMISSION_TIME_HEADER = "Paypal-Transmission-Time"
    AUTH_ALGO_HEADER = "Paypal-Auth-Algo"
    WEBHOOK_ID_HEADER = "Paypal-Webhook-Id"

    def __init__(
        self,
        webhook_url: str | None = None,
        clock: Callable[[], float] = time.time,
        certificate_verifier: CertificateVerifier | None = None,
    ):
        super().__init__(webhook_url=webhook_url, clock=clock)
        self.certificate_verifier = certificate_verifier

    def verify_signature(
        self,
        payload: str | bytes,
        headers: Headers,
        secret: str | None,
        tolerance: int | None = None,
    ) -> bool:
        signature = extract_header(headers, self.SIGNATURE_HEADER)
        transmission_id = extract_header(headers, self.TRANSMISSION_ID_HEADER)
        transmission_time = extract_header(headers, self.TRANSMISSION_TIME_HEADER)

        if not signature or not transmission_id or not transmission_time:
            self.log_rejection("missing transmission headers")
            return False

        timestamp = parse_timestamp(transmission_time)
        if timestamp is None:
            self.log_rejection("invalid transmission time")
            return False
        if not self.within_tolerance(timestamp, tolerance):
            self.log_rejection("timestamp outside tolerance", timestamp=timestamp)
            return False

        if self.certificate_verifier is None:
            self.log_rejection("no certificate verifier configured")
            return False

        try:
            verified = bool(self.certificate_verifier(payload, headers, secret))
        except Exception as e:
            self.log_rejection("certificate verifier raised", error=str(e))
            return False

        if not verified:
            self.log_rejection("certificate verification failed", transmission_id=transmission_id)
        return verified

    def extract_timestamp(self, headers: Headers) -> int | None:
        return parse_timestamp(extract_header(headers, self.TRANSMISSION_TIME_HEADER))

    def extract_event_id(self, payload: Mapping[str, Any]) -> str | None:
        value = payload.get("id")
        return str(value) if value else None

    def extract_event_type(self, payload: Mapping[str, Any]) -> str:
        value = payload.get("event_type")
        return str(value) if value else "webhook.received"
