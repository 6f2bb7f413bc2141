"""
Provider verifiers, selected by name through an explicit map.
"""
import time
from typing import Any, Callable

from webhook_hub.core.exceptions import UnknownVerifierError
from webhook_hub.verifiers.base import BaseVerifier
from webhook_hub.verifiers.paypal import PaypalVerifier
from webhook_hub.verifiers.square import SquareVerifier
from webhook_hub.verifiers.stripe import StripeVerifier

VERIFIERS: dict[str, type[BaseVerifier]] = {
    BaseVerifier.name: BaseVerifier,
    StripeVerifier.name: StripeVerifier,
    SquareVerifier.name: SquareVerifier,
    PaypalVerifier.name: PaypalVerifier,
}


def build_verifier(
    provider_config,
    clock: Callable[[], float] = time.time,
    **options: Any,
) -> BaseVerifier:
    """
    Instantiate the verifier named by ``provider_config.verifier``.

    Raises:
        UnknownVerifierError: the name is not in VERIFIERS
    """
    verifier_cls = VERIFIERS.get(provider_config.verifier)
    if verifier_cls is None:
        raise UnknownVerifierError(provider_config.verifier, list(VERIFIERS))
    return verifier_cls(webhook_url=provider_config.webhook_url, clock=clock, **options)


__all__ = [
    "VERIFIERS",
    "BaseVerifier",
    "PaypalVerifier",
    "SquareVerifier",
    "StripeVerifier",
    "build_verifier",
]
