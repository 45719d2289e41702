"""Abstract base class for provisioning strategies.

A provisioning strategy encapsulates one authentication protocol end to end:
given the device configuration it talks to whatever it needs to (a companion
app calling into a local server, a remote companion service) and either
returns a :class:`~voiceprov.models.Credential` or raises a
:class:`~voiceprov.exceptions.ProvisioningError`.

To implement a new strategy, subclass :class:`ProvisioningStrategy`, set the
:attr:`~ProvisioningStrategy.method` property, and implement
:meth:`~ProvisioningStrategy.run`. Protocol-specific state (session ids,
server handles) stays private to the strategy; the coordinator only ever
calls :meth:`run` and :meth:`stop`.

See Also:
    :mod:`voiceprov.auth.coordinator` for how strategies are driven.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from voiceprov.models import Credential, DeviceConfig, ProvisioningMethod

RegistrationCodeDisplay = Callable[[str], None]
"""Callback that presents a registration code to the user."""


class ProvisioningStrategy(ABC):
    """Abstract base class for provisioning strategies.

    Every concrete strategy must provide:

    1. A :attr:`method` property naming the
       :class:`~voiceprov.models.ProvisioningMethod` it implements.
    2. A :meth:`run` implementation that blocks until a credential is
       obtained or the attempt fails.

    :meth:`run` is always called from the coordinator's background worker,
    never from the thread that called
    :meth:`~voiceprov.auth.coordinator.ProvisioningCoordinator.start`, so it
    is free to block on network I/O.

    Args:
        config: The device configuration.
    """

    def __init__(self, config: DeviceConfig) -> None:
        self._config = config

    @property
    def config(self) -> DeviceConfig:
        return self._config

    @property
    @abstractmethod
    def method(self) -> ProvisioningMethod:
        """Return the provisioning method this strategy implements."""
        ...

    @abstractmethod
    def run(self) -> Credential:
        """Run one provisioning attempt to completion.

        Returns:
            The credential obtained by this attempt.

        Raises:
            ProvisioningError: On any unrecoverable condition of this
                attempt (network error, malformed response, expired or
                invalid session, callback server failure).
        """
        ...

    def stop(self) -> None:
        """Tear down anything :meth:`run` is blocked on.

        Called by the coordinator on shutdown. The default implementation
        does nothing; strategies that block on a local resource override it
        so that a pending :meth:`run` returns promptly with an error.
        """

    def validate_config(self, config: DeviceConfig) -> list[str]:
        """Return human-readable problems with *config* for this strategy.

        An empty list means the configuration is usable.
        """
        return []
