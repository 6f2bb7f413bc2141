"""
Provider and outgoing endpoint configuration

Plain in-memory records. How they are discovered (YAML, database, code) is
up to the host; the engine only sees these dataclasses with secrets already
resolved.
"""
from dataclasses import dataclass, field

from webhook_hub.core.config import settings

DEFAULT_RETRY_DELAYS = (30, 60, 300, 900, 3600)
FALLBACK_RETRY_DELAY = 3600


def delay_from_schedule(retry_delays, attempt: int) -> int:
    """
    Retry delay for a 0-indexed attempt: ``retry_delays[attempt]`` when
    present, else the last element, else FALLBACK_RETRY_DELAY.
    """
    delays = list(retry_delays or [])
    if not delays:
        return FALLBACK_RETRY_DELAY
    if attempt < 0:
        attempt = 0
    if attempt < len(delays):
        return int(delays[attempt])
    return int(delays[-1])


@dataclass
class ProviderConfig:
    """One webhook sender"""
    name: str
    token: str
    signing_secret: str | None = None
    verifier: str = "base"
    timestamp_tolerance_seconds: int | None = settings.DEFAULT_TIMESTAMP_TOLERANCE_SECONDS
    max_payload_size_bytes: int | None = settings.DEFAULT_MAX_PAYLOAD_SIZE_BYTES
    rate_limit_requests: int | None = settings.DEFAULT_RATE_LIMIT_REQUESTS
    rate_limit_period: int = settings.DEFAULT_RATE_LIMIT_PERIOD
    active: bool = True
    webhook_url: str | None = None

    @property
    def timestamp_validation_enabled(self) -> bool:
        return bool(self.timestamp_tolerance_seconds)

    @property
    def payload_size_limit_enabled(self) -> bool:
        return bool(self.max_payload_size_bytes)

    @property
    def rate_limiting_enabled(self) -> bool:
        return bool(self.rate_limit_requests) and bool(self.rate_limit_period)


@dataclass
class OutgoingEndpoint:
    """One destination for locally generated events"""
    name: str
    base_url: str
    signing_secret: str | None = None
    signing_header: str = "X-Webhook-Signature"
    timestamp_header: str = "X-Webhook-Timestamp"
    default_headers: dict[str, str] = field(default_factory=dict)
    retry_delays: list[int] = field(default_factory=lambda: list(DEFAULT_RETRY_DELAYS))
    max_attempts: int = 5
    circuit_breaker_enabled: bool = True
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: int = 300

    def delay_for_attempt(self, attempt: int) -> int:
        return delay_from_schedule(self.retry_delays, attempt)

    def url_for(self, path: str | None = None) -> str:
        if not path:
            return self.base_url
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
