"""
Observability events

Components call ``emit(name, **fields)`` at well-known points; subscribers
(metrics exporters, tests) receive ``(name, fields)``. Every event is also
written to the structured log. Fields never carry secrets or signature
values; ``redact`` is applied as a last line before anything leaves.
"""
import threading
from typing import Any, Callable

from webhook_hub.core.logging import get_logger, redact

logger = get_logger(__name__)

INCOMING_EVENT_RECEIVED = "incoming_event.received"
SIGNATURE_VERIFIED = "signature.verified"
SIGNATURE_FAILED = "signature.failed"
RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"
ACTION_STARTED = "action.started"
ACTION_COMPLETED = "action.completed"
ACTION_FAILED = "action.failed"
CIRCUIT_OPENED = "circuit.opened"
CIRCUIT_CLOSED = "circuit.closed"
OUTGOING_EVENT_DELIVERED = "outgoing_event.delivered"
OUTGOING_EVENT_FAILED = "outgoing_event.failed"

Subscriber = Callable[[str, dict[str, Any]], None]


class Instrumentation:
    """In-process event bus for observability events"""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Attach a subscriber; returns a function that detaches it"""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, name: str, **fields: Any) -> None:
        payload = redact(fields)
        logger.debug(name, extra_data={"event": name, **payload})

        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(name, payload)
            except Exception as e:
                # a broken subscriber must not fail ingestion or dispatch
                logger.error(
                    "Instrumentation subscriber failed",
                    extra_data={"event": name, "error": str(e)},
                    exc_info=True
                )
