"""Companion-app provisioning strategy: OAuth2 Authorization Code with PKCE, device as server.

A paired mobile app signs the user in and obtains an authorization code on
the device's behalf. The device never sees the user's password; it only
proves, through PKCE (:rfc:`7636`), that it is the party the code was issued
for.

Flow:
    1. Generate a ``code_verifier`` / ``code_challenge`` pair and a session
       id, then bind a local HTTP(S) server for this one handshake.
    2. The app calls ``GET /provision/deviceInfo`` and receives the product
       id, serial number, session id and code challenge.
    3. The app signs the user in and calls ``POST /provision/companionInfo``
       with ``authCode``, ``clientId``, ``redirectUri`` and ``sessionId``.
    4. The device exchanges the code plus its ``code_verifier`` at the
       token endpoint and answers the app with the outcome.

The server exists only for the duration of :meth:`CompanionAppStrategy.run`
and is shut down on every exit path.

See Also:
    :class:`voiceprov.auth.base.ProvisioningStrategy` for the base interface.
    :mod:`voiceprov.strategies.companion_service` for the headless
    alternative.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import secrets
import ssl
import threading
import uuid
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from voiceprov.auth.base import ProvisioningStrategy
from voiceprov.exceptions import ProvisioningError, ServerStartupError
from voiceprov.models import CompanionAppInfo, Credential, DeviceConfig, ProvisioningMethod

logger = logging.getLogger(__name__)

DEVICE_INFO_PATH = "/provision/deviceInfo"
COMPANION_INFO_PATH = "/provision/companionInfo"


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    # RFC 7636: 43-128 characters from unreserved character set
    code_verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


@dataclass
class _Handshake:
    """State of one provisioning handshake, shared with the request handler threads."""

    product_id: str
    dsn: str
    session_id: str
    code_verifier: str
    code_challenge: str
    lwa_url: str
    done: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    credential: Optional[Credential] = None
    last_error: Optional[ProvisioningError] = None

    def device_info(self) -> dict[str, str]:
        return {
            "productId": self.product_id,
            "dsn": self.dsn,
            "sessionId": self.session_id,
            "codeChallenge": self.code_challenge,
            "codeChallengeMethod": "S256",
        }


class _ProvisioningServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], handshake: _Handshake) -> None:
        self.handshake = handshake
        super().__init__(address, _ProvisioningRequestHandler)


class _ProvisioningRequestHandler(BaseHTTPRequestHandler):
    server: _ProvisioningServer

    def do_GET(self) -> None:
        if urlparse(self.path).path != DEVICE_INFO_PATH:
            self._send_json(404, {"error": "NotFound", "message": f"No handler for {self.path}"})
            return
        self._send_json(200, self.server.handshake.device_info())

    def do_POST(self) -> None:
        if urlparse(self.path).path != COMPANION_INFO_PATH:
            self._send_json(404, {"error": "NotFound", "message": f"No handler for {self.path}"})
            return

        try:
            length = int(self.headers.get("Content-Length", "0"))
            payload = json.loads(self.rfile.read(length) or b"{}")
        except (ValueError, json.JSONDecodeError):
            self._send_json(400, {"error": "InvalidRequest", "message": "Body must be JSON"})
            return
        if not isinstance(payload, dict):
            self._send_json(400, {"error": "InvalidRequest", "message": "Body must be a JSON object"})
            return

        missing = [
            key
            for key in ("authCode", "clientId", "redirectUri", "sessionId")
            if not payload.get(key)
        ]
        if missing:
            self._send_json(
                400,
                {"error": "MissingParameter", "message": f"Missing: {', '.join(missing)}"},
            )
            return

        handshake = self.server.handshake
        if payload["sessionId"] != handshake.session_id:
            logger.warning("Companion app sent an unknown session id")
            self._send_json(
                400, {"error": "InvalidSessionId", "message": "Session id does not match"}
            )
            return

        # Serialize exchanges: a code can only be redeemed once.
        with handshake.lock:
            if handshake.credential is not None:
                self._send_json(409, {"error": "AlreadyProvisioned", "message": "Device is already provisioned"})
                return
            try:
                credential = _exchange_code(
                    handshake.lwa_url,
                    code=payload["authCode"],
                    client_id=payload["clientId"],
                    redirect_uri=payload["redirectUri"],
                    code_verifier=handshake.code_verifier,
                )
            except ProvisioningError as exc:
                logger.error("Authorization code exchange failed: %s", exc)
                handshake.last_error = exc
                self._send_json(502, {"error": "TokenExchangeFailed", "message": str(exc)})
                return
            handshake.credential = credential

        self._send_json(200, {})
        handshake.done.set()

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("companion app %s - %s", self.address_string(), format % args)

    def _send_json(self, status: int, body: dict[str, Any]) -> None:
        data = json.dumps(body).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


def _exchange_code(
    lwa_url: str,
    code: str,
    client_id: str,
    redirect_uri: str,
    code_verifier: str,
) -> Credential:
    """Exchange an authorization code plus PKCE verifier for tokens.

    Raises:
        ProvisioningError: On HTTP errors or if ``access_token`` is missing
            from the response.
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }
    try:
        response = httpx.post(
            lwa_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=30.0,
        )
        response.raise_for_status()
        token_data: dict[str, Any] = response.json()
    except httpx.HTTPStatusError as exc:
        raise ProvisioningError(
            f"Token exchange failed with status {exc.response.status_code}: "
            f"{exc.response.text}"
        ) from exc
    except httpx.HTTPError as exc:
        raise ProvisioningError(f"Token exchange failed: {exc}") from exc
    except ValueError as exc:
        raise ProvisioningError(f"Token exchange returned malformed JSON: {exc}") from exc

    if not isinstance(token_data, dict) or "access_token" not in token_data:
        raise ProvisioningError("Token response missing 'access_token' field")

    try:
        return Credential(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_in=token_data.get("expires_in"),
            token_type=token_data.get("token_type", "bearer"),
        )
    except ValidationError as exc:
        raise ProvisioningError(f"Token response is malformed: {exc}") from exc


class CompanionAppStrategy(ProvisioningStrategy):
    """Provision through a companion mobile app calling into a local server.

    Each :meth:`run` binds a fresh server with a fresh PKCE pair and session
    id, blocks until the app completes a code exchange, and always tears the
    server down before returning. :meth:`stop` makes a blocked :meth:`run`
    return with an error; a stopped strategy refuses further runs.
    """

    def __init__(self, config: DeviceConfig) -> None:
        super().__init__(config)
        self._stopped = threading.Event()
        self._listening = threading.Event()
        self._state_lock = threading.Lock()
        self._handshake: Optional[_Handshake] = None
        self._server_address: Optional[tuple[str, int]] = None

    @property
    def method(self) -> ProvisioningMethod:
        return ProvisioningMethod.COMPANION_APP

    @property
    def server_address(self) -> Optional[tuple[str, int]]:
        """``(host, port)`` the callback server is bound to while a run is active."""
        with self._state_lock:
            return self._server_address

    def wait_until_listening(self, timeout: Optional[float] = None) -> Optional[tuple[str, int]]:
        """Block until the callback server of the current run accepts connections."""
        self._listening.wait(timeout)
        return self.server_address

    def validate_config(self, config: DeviceConfig) -> list[str]:
        """Check the ``companionApp`` section.

        Returns:
            A list of human-readable error strings. Empty if valid.
        """
        info = config.companion_app
        if info is None:
            return ["companionApp provisioning requires a 'companionApp' section"]
        errors: list[str] = []
        if not 0 <= info.local_port <= 65535:
            errors.append(f"Invalid localPort {info.local_port}: must be 0-65535")
        if not info.lwa_url.startswith(("http://", "https://")):
            errors.append(f"Invalid lwaUrl '{info.lwa_url}': must be an http(s) URL")
        if bool(info.ssl_cert_file) != bool(info.ssl_key_file):
            errors.append("sslCertFile and sslKeyFile must be set together")
        for name, value in (("sslCertFile", info.ssl_cert_file), ("sslKeyFile", info.ssl_key_file)):
            if value and not Path(value).expanduser().is_file():
                errors.append(f"{name} not found: {value}")
        if info.timeout_seconds is not None and info.timeout_seconds <= 0:
            errors.append("timeoutSeconds must be positive")
        return errors

    def run(self) -> Credential:
        """Serve one provisioning handshake and return the resulting credential.

        Raises:
            ServerStartupError: If the callback server cannot bind or its
                TLS material cannot be loaded.
            ProvisioningError: If the handshake times out or the strategy
                is stopped before the app completes the exchange.
        """
        if self._stopped.is_set():
            raise ProvisioningError("Companion app provisioning has been stopped")
        info = self._config.companion_app
        if info is None:
            raise ProvisioningError("companionApp provisioning requires a 'companionApp' section")

        code_verifier, code_challenge = generate_pkce_pair()
        handshake = _Handshake(
            product_id=self._config.product_id,
            dsn=self._config.dsn,
            session_id=str(uuid.uuid4()),
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            lwa_url=info.lwa_url,
        )

        server = self._bind(info, handshake)
        thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.2},
            name="voiceprov-companion-app-server",
            daemon=True,
        )
        try:
            with self._state_lock:
                self._handshake = handshake
                self._server_address = server.server_address[:2]
            if self._stopped.is_set():
                handshake.done.set()
            thread.start()
            self._listening.set()
            logger.info(
                "Waiting for companion app on %s:%d", *server.server_address[:2]
            )

            # stop() sets the same event, so a stop wakes this wait too.
            handshake.done.wait(info.timeout_seconds)

            if handshake.credential is not None:
                logger.info("Companion app provisioning completed")
                return handshake.credential
            if self._stopped.is_set():
                raise ProvisioningError("Companion app provisioning was stopped before completion")
            message = f"No companion app completed provisioning within {info.timeout_seconds}s"
            if handshake.last_error is not None:
                message += f" (last error: {handshake.last_error})"
            raise ProvisioningError(message)
        finally:
            self._listening.clear()
            with self._state_lock:
                self._handshake = None
                self._server_address = None
            if thread.is_alive():
                server.shutdown()
                thread.join(timeout=5)
            server.server_close()
            logger.debug("Companion app provisioning server closed")

    def stop(self) -> None:
        self._stopped.set()
        with self._state_lock:
            handshake = self._handshake
        if handshake is not None:
            handshake.done.set()

    def _bind(self, info: CompanionAppInfo, handshake: _Handshake) -> _ProvisioningServer:
        address = (info.bind_address, info.local_port)
        try:
            server = _ProvisioningServer(address, handshake)
        except OSError as exc:
            raise ServerStartupError(
                f"Cannot bind companion app provisioning server to "
                f"{info.bind_address}:{info.local_port}: {exc}"
            ) from exc

        if info.ssl_cert_file and info.ssl_key_file:
            try:
                context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
                context.load_cert_chain(
                    str(Path(info.ssl_cert_file).expanduser()),
                    str(Path(info.ssl_key_file).expanduser()),
                )
                server.socket = context.wrap_socket(server.socket, server_side=True)
            except (OSError, ssl.SSLError) as exc:
                server.server_close()
                raise ServerStartupError(
                    f"Cannot load TLS certificate for provisioning server: {exc}"
                ) from exc
        return server
