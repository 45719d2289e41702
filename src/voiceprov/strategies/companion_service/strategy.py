"""Companion-service provisioning strategy: registration code shown to a human, token polled.

For devices without a browser or a paired phone. The device acts as a client
of a remote companion service which owns the OAuth2 relationship.

Flow:
    1. ``GET {service_url}/provision/regCode?productId=...&dsn=...`` returns a
       ``regCode`` and a ``sessionId``.
    2. The registration code is handed to the display callback exactly once;
       the user opens ``{service_url}/provision/{regCode}`` elsewhere and
       signs in.
    3. ``GET {service_url}/provision/accessToken?sessionId=...`` is polled
       until the service returns the tokens or the session times out.

Error bodies have the shape ``{"error": ..., "message": ...}``.
``AuthorizationPending`` means keep polling; ``InvalidSessionId`` raises
:class:`~voiceprov.exceptions.InvalidSessionError`; everything else raises
:class:`~voiceprov.exceptions.ProvisioningError`.

See Also:
    :class:`voiceprov.auth.base.ProvisioningStrategy` for the base interface.
    :mod:`voiceprov.strategies.companion_app` for the companion-app
    alternative.
"""

from __future__ import annotations

import logging
import ssl
import threading
import time
from pathlib import Path
from typing import Any, Union

import httpx
from pydantic import ValidationError

from voiceprov.auth.base import ProvisioningStrategy, RegistrationCodeDisplay
from voiceprov.exceptions import InvalidSessionError, ProvisioningError
from voiceprov.models import CompanionServiceInfo, Credential, DeviceConfig, ProvisioningMethod
from voiceprov.output import notice

logger = logging.getLogger(__name__)

REG_CODE_PATH = "/provision/regCode"
ACCESS_TOKEN_PATH = "/provision/accessToken"

_PENDING_ERRORS = frozenset({"AuthorizationPending", "authorization_pending"})
_INVALID_SESSION_ERROR = "InvalidSessionId"


def registration_url(service_url: str, reg_code: str) -> str:
    """Return the URL a user visits to confirm *reg_code*."""
    return f"{service_url.rstrip('/')}/provision/{reg_code}"


class ConsoleRegistrationDisplay:
    """Default display callback: prints the registration URL to stderr."""

    def __init__(self, service_url: str) -> None:
        self._service_url = service_url

    def __call__(self, reg_code: str) -> None:
        notice(
            "Register your device",
            "Please register your device by visiting the following URL in a web "
            f"browser and follow the instructions:\n{registration_url(self._service_url, reg_code)}",
        )


class CompanionServiceStrategy(ProvisioningStrategy):
    """Provision by polling a remote companion service.

    Every :meth:`run` opens a new session, so the registration code shown to
    the user changes between attempts.

    Args:
        config: The device configuration; ``companion_service`` is required.
        display: Called once per run with the registration code.
    """

    def __init__(self, config: DeviceConfig, display: RegistrationCodeDisplay) -> None:
        super().__init__(config)
        self._display = display
        self._stopped = threading.Event()

    @property
    def method(self) -> ProvisioningMethod:
        return ProvisioningMethod.COMPANION_SERVICE

    def validate_config(self, config: DeviceConfig) -> list[str]:
        """Check the ``companionService`` section.

        Returns:
            A list of human-readable error strings. Empty if valid.
        """
        info = config.companion_service
        if info is None:
            return ["companionService provisioning requires a 'companionService' section"]
        errors: list[str] = []
        if not info.service_url.startswith(("http://", "https://")):
            errors.append(f"Invalid serviceUrl '{info.service_url}': must be an http(s) URL")
        if info.ca_cert_file and not Path(info.ca_cert_file).expanduser().is_file():
            errors.append(f"caCertFile not found: {info.ca_cert_file}")
        if info.poll_interval_seconds <= 0:
            errors.append("pollIntervalSeconds must be positive")
        if info.session_timeout_seconds <= 0:
            errors.append("sessionTimeoutSeconds must be positive")
        return errors

    def run(self) -> Credential:
        """Register, display the code, and poll until the token arrives.

        Raises:
            InvalidSessionError: If the service no longer knows the session.
            ProvisioningError: On transport errors, malformed responses,
                service errors, session timeout, or :meth:`stop`.
        """
        if self._stopped.is_set():
            raise ProvisioningError("Companion service provisioning has been stopped")
        info = self._config.companion_service
        if info is None:
            raise ProvisioningError(
                "companionService provisioning requires a 'companionService' section"
            )

        reg_code, session_id = self._request_registration_code(info)
        logger.info("Received registration code from %s", info.service_url)
        self._display(reg_code)

        token_data = self._poll_for_token(info, session_id)
        try:
            return Credential(
                access_token=token_data["access_token"],
                refresh_token=token_data.get("refresh_token"),
                expires_in=token_data.get("expires_in"),
                token_type=token_data.get("token_type", "bearer"),
            )
        except ValidationError as exc:
            raise ProvisioningError(f"Access token response is malformed: {exc}") from exc

    def stop(self) -> None:
        self._stopped.set()

    def _request_registration_code(self, info: CompanionServiceInfo) -> tuple[str, str]:
        """Open a session and return ``(reg_code, session_id)``."""
        status, data = self._get(
            info,
            REG_CODE_PATH,
            {"productId": self._config.product_id, "dsn": self._config.dsn},
        )
        _raise_for_error(status, data)
        reg_code = data.get("regCode")
        session_id = data.get("sessionId")
        if not reg_code or not session_id:
            raise ProvisioningError("Registration response missing 'regCode' or 'sessionId'")
        return str(reg_code), str(session_id)

    def _poll_for_token(self, info: CompanionServiceInfo, session_id: str) -> dict[str, Any]:
        """Poll the access-token endpoint until tokens arrive or the session times out."""
        deadline = time.monotonic() + info.session_timeout_seconds
        poll_interval = info.poll_interval_seconds

        while time.monotonic() < deadline:
            if self._stopped.wait(poll_interval):
                raise ProvisioningError("Companion service provisioning was stopped")

            status, data = self._get(info, ACCESS_TOKEN_PATH, {"sessionId": session_id})
            if status == 200 and "access_token" in data:
                return data
            if data.get("error") in _PENDING_ERRORS:
                logger.debug("Waiting for the user to finish signing in")
                continue
            _raise_for_error(status, data)
            raise ProvisioningError("Access token response missing 'access_token' field")

        raise ProvisioningError(
            "Registration session timed out before sign-in completed -- please try again"
        )

    def _get(
        self, info: CompanionServiceInfo, path: str, params: dict[str, str]
    ) -> tuple[int, dict[str, Any]]:
        url = f"{info.service_url.rstrip('/')}{path}"
        try:
            response = httpx.get(
                url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=info.request_timeout_seconds,
                verify=_verify(info),
            )
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"Request to {url} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ProvisioningError(
                f"Malformed response from {url} (HTTP {response.status_code})"
            ) from exc
        if not isinstance(data, dict):
            raise ProvisioningError(f"Malformed response from {url}: expected a JSON object")
        return response.status_code, data


def _verify(info: CompanionServiceInfo) -> Union[bool, ssl.SSLContext]:
    if info.ca_cert_file:
        return ssl.create_default_context(cafile=str(Path(info.ca_cert_file).expanduser()))
    return True


def _raise_for_error(status: int, data: dict[str, Any]) -> None:
    error = data.get("error")
    if error:
        message = data.get("message", "")
        if error == _INVALID_SESSION_ERROR:
            raise InvalidSessionError(f"{error}: {message}")
        raise ProvisioningError(f"{error}: {message}")
    if status >= 400:
        raise ProvisioningError(f"Companion service returned HTTP {status}")
