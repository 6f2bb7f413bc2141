"""
In-memory action registry

Declared bindings of (provider, event_type) to actions plus the handler
callables that run them. Each bucket is kept sorted by (priority,
action_id) so dispatch order is deterministic.
"""
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from webhook_hub.core.logging import get_logger
from webhook_hub.domain.provider_config import DEFAULT_RETRY_DELAYS, delay_from_schedule

logger = get_logger(__name__)

Handler = Callable[[Any], Any]


@dataclass(frozen=True)
class ActionConfig:
    """Policy for one action bound to (provider, event_type)"""
    provider: str
    event_type: str
    action_id: str
    priority: int = 100
    is_async: bool = True
    max_attempts: int = 5
    retry_delays: tuple[int, ...] = field(default=DEFAULT_RETRY_DELAYS)

    def __post_init__(self) -> None:
        # lists from JSON columns or callers become tuples so configs stay hashable
        object.__setattr__(self, "retry_delays", tuple(self.retry_delays or ()))

    def delay_for_attempt(self, attempt: int) -> int:
        return delay_from_schedule(self.retry_delays, attempt)

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.priority, self.action_id)


class ActionRegistry:
    """Thread-safe registry of declared action configs and handlers"""

    def __init__(self) -> None:
        self._configs: dict[tuple[str, str], list[ActionConfig]] = {}
        self._handlers: dict[str, Handler] = {}
        self._lock = threading.Lock()

    def register(
        self,
        provider: str,
        event_type: str,
        action_id: str,
        handler: Handler | None = None,
        **policy: Any,
    ) -> ActionConfig:
        """
        Declare an action for (provider, event_type).

        Re-registering the same action id replaces its policy in place.
        """
        config = ActionConfig(provider=provider, event_type=event_type, action_id=action_id, **policy)
        key = (provider, event_type)
        with self._lock:
            bucket = [c for c in self._configs.get(key, []) if c.action_id != action_id]
            bucket.append(config)
            bucket.sort(key=lambda c: c.sort_key)
            self._configs[key] = bucket
            if handler is not None:
                self._handlers[action_id] = handler

        logger.debug(
            "Action registered",
            extra_data={
                "provider": provider,
                "event_type": event_type,
                "action_id": action_id,
                "priority": config.priority,
            }
        )
        return config

    def register_handler(self, action_id: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[action_id] = handler

    def handler_for(self, action_id: str) -> Handler | None:
        with self._lock:
            return self._handlers.get(action_id)

    def actions_for(self, provider: str, event_type: str) -> list[ActionConfig]:
        with self._lock:
            return list(self._configs.get((provider, event_type), []))

    def find_action_config(self, provider: str, event_type: str, action_id: str) -> ActionConfig | None:
        for config in self.actions_for(provider, event_type):
            if config.action_id == action_id:
                return config
        return None

    def actions_registered(self, provider: str, event_type: str) -> bool:
        with self._lock:
            return bool(self._configs.get((provider, event_type)))

    def providers(self) -> list[str]:
        with self._lock:
            return sorted({provider for provider, _ in self._configs})

    def actions_for_provider(self, provider: str) -> list[ActionConfig]:
        with self._lock:
            configs = [
                config
                for (config_provider, _), bucket in self._configs.items()
                if config_provider == provider
                for config in bucket
            ]
        return sorted(configs, key=lambda c: (c.event_type, c.priority, c.action_id))

    def all_actions(self) -> list[ActionConfig]:
        with self._lock:
            configs = [config for bucket in self._configs.values() for config in bucket]
        return sorted(configs, key=lambda c: (c.provider, c.event_type, c.priority, c.action_id))

    def clear(self) -> None:
        with self._lock:
            self._configs.clear()
            self._handlers.clear()
