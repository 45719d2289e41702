"""Strategy selection -- maps a provisioning method to its strategy class.

The device configuration names exactly one
:class:`~voiceprov.models.ProvisioningMethod`; :func:`create_strategy` turns
it into the matching :class:`~voiceprov.auth.base.ProvisioningStrategy`.
Nothing outside this module needs to know which concrete strategy exists.

See Also:
    :class:`~voiceprov.auth.coordinator.ProvisioningCoordinator` -- the only
    production caller of :func:`create_strategy`.
"""

from __future__ import annotations

from typing import Optional

from voiceprov.auth.base import ProvisioningStrategy, RegistrationCodeDisplay
from voiceprov.exceptions import ConfigError
from voiceprov.models import DeviceConfig, ProvisioningMethod


def create_strategy(
    config: DeviceConfig,
    display: Optional[RegistrationCodeDisplay] = None,
) -> ProvisioningStrategy:
    """Build the provisioning strategy selected by *config*.

    Args:
        config: The device configuration.
        display: Callback that presents the registration code to the user.
            Only used by the companion-service strategy; when omitted the
            code is printed with
            :class:`~voiceprov.strategies.companion_service.ConsoleRegistrationDisplay`.

    Returns:
        A ready-to-run strategy instance.

    Raises:
        ConfigError: If the configured method has no strategy.
    """
    from voiceprov.strategies.companion_app import CompanionAppStrategy
    from voiceprov.strategies.companion_service import (
        CompanionServiceStrategy,
        ConsoleRegistrationDisplay,
    )

    method = config.provisioning_method
    if method == ProvisioningMethod.COMPANION_APP:
        return CompanionAppStrategy(config)
    if method == ProvisioningMethod.COMPANION_SERVICE:
        if display is None:
            if config.companion_service is None:
                raise ConfigError(
                    "companionService provisioning requires a 'companionService' section"
                )
            display = ConsoleRegistrationDisplay(config.companion_service.service_url)
        return CompanionServiceStrategy(config, display)

    available = ", ".join(m.value for m in ProvisioningMethod)
    raise ConfigError(
        f"No provisioning strategy for method '{method}'. Available methods: {available}"
    )


def validate_device_config(config: DeviceConfig) -> list[str]:
    """Return the configured strategy's complaints about *config* (empty when valid)."""
    strategy = create_strategy(config, display=lambda code: None)
    return strategy.validate_config(config)
