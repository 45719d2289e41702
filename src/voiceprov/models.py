"""Canonical Pydantic models shared across all voiceprov modules.

This is the single source of truth for data shapes in the project. The models
fall into two groups:

**Configuration models** -- read from the device config file:
    :class:`ProvisioningMethod`, :class:`CompanionAppInfo`,
    :class:`CompanionServiceInfo`, and :class:`DeviceConfig`.

**Runtime models** -- produced while provisioning and recording:
    :class:`Credential`, :class:`CoordinatorState`, and
    :class:`RecordingState`.

Configuration models accept both the snake_case field names and the camelCase
keys used by existing device config files (``productId``,
``provisioningMethod``, ``companionService.serviceUrl``, ...). All of them are
frozen: the core only ever reads them.
"""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# --- Device config ---


class ProvisioningMethod(str, enum.Enum):
    """How the device obtains its access token."""

    COMPANION_APP = "companionApp"
    COMPANION_SERVICE = "companionService"


class CompanionAppInfo(BaseModel):
    """Settings for the companion-app strategy's local callback server.

    When both ``ssl_cert_file`` and ``ssl_key_file`` are set the server speaks
    HTTPS, which is what the mobile companion apps expect on a real device.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    local_port: int = Field(
        default=443, alias="localPort", description="Port the callback server binds"
    )
    bind_address: str = Field(
        default="0.0.0.0", alias="bindAddress", description="Interface to bind"
    )
    lwa_url: str = Field(
        default="https://api.amazon.com/auth/O2/token",
        alias="lwaUrl",
        description="OAuth2 token endpoint used to exchange the authorization code",
    )
    ssl_cert_file: Optional[str] = Field(default=None, alias="sslCertFile")
    ssl_key_file: Optional[str] = Field(default=None, alias="sslKeyFile")
    timeout_seconds: Optional[float] = Field(
        default=None,
        alias="timeoutSeconds",
        description="Give up the handshake after this long (None = wait until stopped)",
    )


class CompanionServiceInfo(BaseModel):
    """Settings for the companion-service strategy's polling client."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    service_url: str = Field(
        alias="serviceUrl", description="Base URL of the companion service"
    )
    ca_cert_file: Optional[str] = Field(
        default=None,
        alias="caCertFile",
        description="CA bundle used to verify the companion service certificate",
    )
    poll_interval_seconds: float = Field(default=5.0, alias="pollIntervalSeconds")
    session_timeout_seconds: float = Field(default=300.0, alias="sessionTimeoutSeconds")
    request_timeout_seconds: float = Field(default=30.0, alias="requestTimeoutSeconds")


class DeviceConfig(BaseModel):
    """Everything the provisioning subsystem needs to know about this device.

    Loaded once at startup by :func:`~voiceprov.config.load_device_config`.
    The info block matching ``provisioning_method`` is required; the other
    one may be present and is ignored.

    Example::

        DeviceConfig(
            product_id="my_device",
            dsn="123456",
            provisioning_method=ProvisioningMethod.COMPANION_SERVICE,
            companion_service=CompanionServiceInfo(service_url="https://localhost:3000"),
        )
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    product_id: str = Field(alias="productId", description="Product id registered for the device type")
    dsn: str = Field(description="Device serial number")
    provisioning_method: ProvisioningMethod = Field(alias="provisioningMethod")
    companion_app: Optional[CompanionAppInfo] = Field(default=None, alias="companionApp")
    companion_service: Optional[CompanionServiceInfo] = Field(
        default=None, alias="companionService"
    )

    @model_validator(mode="after")
    def _check_method_info(self) -> "DeviceConfig":
        if (
            self.provisioning_method == ProvisioningMethod.COMPANION_APP
            and self.companion_app is None
        ):
            raise ValueError("provisioningMethod 'companionApp' requires a 'companionApp' section")
        if (
            self.provisioning_method == ProvisioningMethod.COMPANION_SERVICE
            and self.companion_service is None
        ):
            raise ValueError(
                "provisioningMethod 'companionService' requires a 'companionService' section"
            )
        return self


# --- Runtime models ---


class Credential(BaseModel):
    """An access token obtained by a provisioning strategy.

    Created exactly once per successful provisioning run. A later successful
    run produces a new instance; instances are never mutated.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "bearer"

    def __repr__(self) -> str:
        return f"Credential(access_token='{_mask(self.access_token)}', token_type={self.token_type!r})"

    __str__ = __repr__


def _mask(token: str) -> str:
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


class CoordinatorState(str, enum.Enum):
    """Lifecycle of a :class:`~voiceprov.auth.coordinator.ProvisioningCoordinator`."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RecordingState(str, enum.Enum):
    """States of the :class:`~voiceprov.recording.session.RecordingSession` machine."""

    IDLE = "idle"
    CAPTURING = "capturing"
    FINALIZING = "finalizing"
