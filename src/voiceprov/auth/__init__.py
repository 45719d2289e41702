"""Credential provisioning for voiceprov.

This package provides the strategy-agnostic half of provisioning:

- :class:`ProvisioningStrategy` -- abstract base class every provisioning
  protocol implements (see :mod:`voiceprov.strategies` for the two built-in
  ones).
- :func:`create_strategy` -- picks the strategy named by the device config.
- :class:`ProvisioningCoordinator` -- runs the strategy in the background,
  retries it where appropriate, and broadcasts the result.
- :class:`CredentialListenerRegistry` -- the set of parties that receive the
  access token.
- :class:`PeriodicTimer` -- cancelable fixed-rate timer behind the retry loop.

Typical usage::

    from voiceprov.auth import ProvisioningCoordinator
    from voiceprov.config import load_device_config

    coordinator = ProvisioningCoordinator(load_device_config())
    coordinator.register_listener(lambda token: client.set_token(token))
    coordinator.start()
"""

from voiceprov.auth.base import ProvisioningStrategy, RegistrationCodeDisplay
from voiceprov.auth.coordinator import RETRY_INTERVAL_SECONDS, ProvisioningCoordinator
from voiceprov.auth.listeners import CredentialListener, CredentialListenerRegistry
from voiceprov.auth.manager import create_strategy, validate_device_config
from voiceprov.auth.timer import PeriodicTimer

__all__ = [
    "CredentialListener",
    "CredentialListenerRegistry",
    "PeriodicTimer",
    "ProvisioningCoordinator",
    "ProvisioningStrategy",
    "RETRY_INTERVAL_SECONDS",
    "RegistrationCodeDisplay",
    "create_strategy",
    "validate_device_config",
]
