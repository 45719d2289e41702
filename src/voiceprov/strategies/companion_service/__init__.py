"""Companion-service provisioning strategy (registration code + token polling)."""

from voiceprov.strategies.companion_service.strategy import (
    CompanionServiceStrategy,
    ConsoleRegistrationDisplay,
    registration_url,
)

__all__ = ["CompanionServiceStrategy", "ConsoleRegistrationDisplay", "registration_url"]
