"""
Runtime - the owned bundle of process-local state

Providers, endpoints, the action registry, the rate limiter, the circuit
breaker and the scheduler live on one explicitly constructed object.
Tests build their own; the app and the Celery workers build theirs from
the RUNTIME_FACTORY setting (see configure_runtime).
"""
import os
import re
import threading
import time
from importlib import import_module
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from webhook_hub.core.circuit_breaker import CircuitBreaker
from webhook_hub.core.config import settings
from webhook_hub.core.instrumentation import Instrumentation
from webhook_hub.core.logging import get_logger
from webhook_hub.core.rate_limiter import RateLimiter
from webhook_hub.domain.action_registry import ActionRegistry
from webhook_hub.domain.provider_config import OutgoingEndpoint, ProviderConfig
from webhook_hub.domain.scheduling import WorkScheduler
from webhook_hub.verifiers import BaseVerifier, build_verifier

logger = get_logger(__name__)

_ENV_REFERENCE_RE = re.compile(r"^ENV\[([A-Za-z_][A-Za-z0-9_]*)\]$")


def resolve_secret(value: str | None, environ: Mapping[str, str] | None = None) -> str | None:
    """
    Resolve ``ENV[NAME]`` to the value of environment variable NAME.

    Any other value is returned unchanged. An unset variable resolves to None.
    """
    if not value:
        return value
    match = _ENV_REFERENCE_RE.match(value.strip())
    if not match:
        return value
    env = os.environ if environ is None else environ
    resolved = env.get(match.group(1))
    if not resolved:
        logger.warning(
            "Secret reference is not set in the environment",
            extra_data={"variable": match.group(1)}
        )
    return resolved or None


@dataclass
class Runtime:
    scheduler: WorkScheduler | None = None
    clock: Callable[[], float] = time.time
    action_registry: ActionRegistry = field(default_factory=ActionRegistry)
    instrumentation: Instrumentation = field(default_factory=Instrumentation)
    rate_limiter: RateLimiter | None = None
    circuit_breaker: CircuitBreaker | None = None
    # extra constructor kwargs per verifier name, e.g. {"paypal": {"certificate_verifier": fn}}
    verifier_options: dict[str, dict[str, Any]] = field(default_factory=dict)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    endpoints: dict[str, OutgoingEndpoint] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.rate_limiter is None:
            self.rate_limiter = RateLimiter(clock=self.clock)
        if self.circuit_breaker is None:
            self.circuit_breaker = CircuitBreaker(clock=self.clock, instrumentation=self.instrumentation)
        self._verifiers: dict[str, BaseVerifier] = {}
        for config in list(self.providers.values()):
            self.register_provider(config)

    def register_provider(self, config: ProviderConfig, environ: Mapping[str, str] | None = None) -> ProviderConfig:
        """
        Add or replace a provider. The verifier is built here so an unknown
        verifier name fails at configuration time.

        Raises:
            UnknownVerifierError
        """
        config.signing_secret = resolve_secret(config.signing_secret, environ)
        verifier = build_verifier(config, clock=self.clock, **self.verifier_options.get(config.verifier, {}))
        self.providers[config.name] = config
        self._verifiers[config.name] = verifier
        logger.info(
            "Provider registered",
            extra_data={"provider": config.name, "verifier": config.verifier, "active": config.active}
        )
        return config

    def provider(self, name: str) -> ProviderConfig | None:
        return self.providers.get(name)

    def verifier_for(self, name: str) -> BaseVerifier:
        return self._verifiers[name]

    def register_endpoint(self, endpoint: OutgoingEndpoint, environ: Mapping[str, str] | None = None) -> OutgoingEndpoint:
        endpoint.signing_secret = resolve_secret(endpoint.signing_secret, environ)
        self.endpoints[endpoint.name] = endpoint
        return endpoint

    def endpoint(self, name: str) -> OutgoingEndpoint | None:
        return self.endpoints.get(name)


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def load_runtime_factory(path: str) -> Callable[[], Runtime]:
    """
    Import ``package.module:function`` (or ``package.module.function``).

    Raises:
        ValueError: the path names no attribute
        ImportError, AttributeError: the module or function does not exist
    """
    module_name, _, attr = path.partition(":")
    if not attr:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"Runtime factory '{path}' must look like 'package.module:function'")
    return getattr(import_module(module_name), attr)


def build_runtime(factory_path: str | None = None) -> Runtime:
    """
    Build the process runtime from RUNTIME_FACTORY.

    Without a factory the runtime is empty: every provider is unknown and no
    action has a handler. A runtime without a scheduler gets the Celery one.
    """
    path = settings.RUNTIME_FACTORY if factory_path is None else factory_path
    if path:
        runtime = load_runtime_factory(path)()
    else:
        logger.warning("RUNTIME_FACTORY is not set; no providers or actions are configured")
        runtime = Runtime()

    if runtime.scheduler is None:
        from webhook_hub.workers.scheduler import CeleryWorkScheduler
        runtime.scheduler = CeleryWorkScheduler()

    logger.info(
        "Runtime configured",
        extra_data={
            "factory": path or None,
            "providers": sorted(runtime.providers),
            "endpoints": sorted(runtime.endpoints),
            "actions": len(runtime.action_registry.all_actions()),
        }
    )
    return runtime


def get_runtime() -> Runtime:
    """Process default runtime, built on first use"""
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    """Install the process default (host setup code, tests)"""
    global _runtime
    with _runtime_lock:
        _runtime = runtime


def configure_runtime(factory_path: str | None = None) -> Runtime:
    """Build and install the process default; called at API startup and worker boot"""
    runtime = build_runtime(factory_path)
    set_runtime(runtime)
    return runtime
