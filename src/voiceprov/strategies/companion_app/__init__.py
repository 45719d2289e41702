"""Companion-app provisioning strategy (local callback server + PKCE)."""

from voiceprov.strategies.companion_app.strategy import (
    CompanionAppStrategy,
    generate_pkce_pair,
)

__all__ = ["CompanionAppStrategy", "generate_pkce_pair"]
