"""Tests for the companion-app strategy (local callback server + PKCE).

The callback server is exercised over a real loopback socket; only the
token endpoint (``httpx.post``) is mocked.
"""

from __future__ import annotations

import base64
import hashlib
import json
import socket
import threading
from http.client import HTTPConnection
from typing import Any, Optional
from unittest.mock import MagicMock, patch

import httpx
import pytest

from voiceprov.exceptions import ProvisioningError, ServerStartupError
from voiceprov.models import CompanionAppInfo, Credential, DeviceConfig, ProvisioningMethod
from voiceprov.strategies.companion_app import CompanionAppStrategy, generate_pkce_pair

_POST_TARGET = "voiceprov.strategies.companion_app.strategy.httpx.post"


def _make_config(**info: Any) -> DeviceConfig:
    defaults: dict[str, Any] = {
        "local_port": 0,
        "bind_address": "127.0.0.1",
        "lwa_url": "https://lwa.example.com/auth/O2/token",
        "timeout_seconds": 5,
    }
    defaults.update(info)
    return DeviceConfig(
        product_id="my_device",
        dsn="123456",
        provisioning_method=ProvisioningMethod.COMPANION_APP,
        companion_app=CompanionAppInfo(**defaults),
    )


def _mock_httpx_post(
    token_response: Optional[dict[str, object]] = None,
    status_code: int = 200,
) -> MagicMock:
    """Create a mock for httpx.post that returns a token response."""
    if token_response is None:
        token_response = {
            "access_token": "Atza|device-token",
            "refresh_token": "Atzr|refresh",
            "token_type": "bearer",
            "expires_in": 3600,
        }

    mock_response = MagicMock(spec=httpx.Response)
    mock_response.status_code = status_code
    mock_response.json.return_value = token_response
    mock_response.text = json.dumps(token_response)

    if status_code >= 400:
        mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
            message=f"HTTP {status_code}",
            request=MagicMock(),
            response=mock_response,
        )
    else:
        mock_response.raise_for_status.return_value = None

    return mock_response


class _Runner:
    """Runs ``strategy.run()`` on a thread and keeps the outcome."""

    def __init__(self, strategy: CompanionAppStrategy) -> None:
        self.strategy = strategy
        self.result: Optional[Credential] = None
        self.error: Optional[BaseException] = None
        self.thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        try:
            self.result = self.strategy.run()
        except BaseException as exc:  # noqa: BLE001
            self.error = exc

    def start(self) -> int:
        self.thread.start()
        address = self.strategy.wait_until_listening(5)
        assert address is not None, "callback server did not start"
        return address[1]

    def join(self) -> None:
        self.thread.join(5)
        assert not self.thread.is_alive()


def _request(
    port: int, method: str, path: str, body: Optional[dict[str, Any]] = None
) -> tuple[int, dict[str, Any]]:
    conn = HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        payload = json.dumps(body).encode() if body is not None else None
        headers = {"Content-Type": "application/json"} if payload is not None else {}
        conn.request(method, path, body=payload, headers=headers)
        response = conn.getresponse()
        return response.status, json.loads(response.read() or b"{}")
    finally:
        conn.close()


def _companion_info(session_id: str, **overrides: str) -> dict[str, str]:
    body = {
        "authCode": "ANdNAVhyhqirUelHGEHA",
        "clientId": "amzn1.application-oa2-client.abc",
        "redirectUri": "amzn://com.example.companion",
        "sessionId": session_id,
    }
    body.update(overrides)
    return body


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------


class TestPkce:
    def test_verifier_length(self) -> None:
        verifier, _ = generate_pkce_pair()
        assert 43 <= len(verifier) <= 128

    def test_challenge_is_s256_of_verifier(self) -> None:
        verifier, challenge = generate_pkce_pair()
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        assert challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        assert "=" not in challenge

    def test_pairs_are_unique(self) -> None:
        assert generate_pkce_pair() != generate_pkce_pair()


# ---------------------------------------------------------------------------
# Handshake over a real socket
# ---------------------------------------------------------------------------


class TestHandshake:
    def test_full_handshake(self) -> None:
        strategy = CompanionAppStrategy(_make_config())
        runner = _Runner(strategy)

        with patch(_POST_TARGET, return_value=_mock_httpx_post()) as mock_post:
            port = runner.start()

            status, info = _request(port, "GET", "/provision/deviceInfo")
            assert status == 200
            assert info["productId"] == "my_device"
            assert info["dsn"] == "123456"
            assert info["codeChallengeMethod"] == "S256"

            status, body = _request(
                port, "POST", "/provision/companionInfo", _companion_info(info["sessionId"])
            )
            assert status == 200
            assert body == {}
            runner.join()

        assert runner.error is None
        assert runner.result is not None
        assert runner.result.access_token == "Atza|device-token"
        assert runner.result.refresh_token == "Atzr|refresh"

        url = mock_post.call_args.args[0]
        data = mock_post.call_args.kwargs["data"]
        assert url == "https://lwa.example.com/auth/O2/token"
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "ANdNAVhyhqirUelHGEHA"
        assert data["client_id"] == "amzn1.application-oa2-client.abc"
        assert data["redirect_uri"] == "amzn://com.example.companion"
        digest = hashlib.sha256(data["code_verifier"].encode("ascii")).digest()
        assert base64.urlsafe_b64encode(digest).rstrip(b"=").decode() == info["codeChallenge"]

    def test_server_closed_after_success(self) -> None:
        strategy = CompanionAppStrategy(_make_config())
        runner = _Runner(strategy)

        with patch(_POST_TARGET, return_value=_mock_httpx_post()):
            port = runner.start()
            _, info = _request(port, "GET", "/provision/deviceInfo")
            _request(port, "POST", "/provision/companionInfo", _companion_info(info["sessionId"]))
            runner.join()

        assert strategy.server_address is None
        with pytest.raises(OSError):
            _request(port, "GET", "/provision/deviceInfo")

    def test_unknown_path_is_404(self) -> None:
        strategy = CompanionAppStrategy(_make_config())
        runner = _Runner(strategy)
        port = runner.start()
        try:
            status, body = _request(port, "GET", "/provision/nothing")
            assert status == 404
            assert body["error"] == "NotFound"
        finally:
            strategy.stop()
            runner.join()

    def test_wrong_session_id_rejected(self) -> None:
        strategy = CompanionAppStrategy(_make_config())
        runner = _Runner(strategy)

        with patch(_POST_TARGET) as mock_post:
            port = runner.start()
            status, body = _request(
                port, "POST", "/provision/companionInfo", _companion_info("not-the-session")
            )
            strategy.stop()
            runner.join()

        assert status == 400
        assert body["error"] == "InvalidSessionId"
        mock_post.assert_not_called()
        assert isinstance(runner.error, ProvisioningError)

    def test_missing_parameters_rejected(self) -> None:
        strategy = CompanionAppStrategy(_make_config())
        runner = _Runner(strategy)
        port = runner.start()
        try:
            status, body = _request(port, "POST", "/provision/companionInfo", {"authCode": "x"})
            assert status == 400
            assert body["error"] == "MissingParameter"
            assert "sessionId" in body["message"]
        finally:
            strategy.stop()
            runner.join()

    def test_failed_exchange_keeps_server_running(self) -> None:
        strategy = CompanionAppStrategy(_make_config())
        runner = _Runner(strategy)
        responses = [
            _mock_httpx_post({"error": "invalid_grant"}, status_code=400),
            _mock_httpx_post(),
        ]

        with patch(_POST_TARGET, side_effect=responses):
            port = runner.start()
            _, info = _request(port, "GET", "/provision/deviceInfo")

            status, body = _request(
                port, "POST", "/provision/companionInfo", _companion_info(info["sessionId"])
            )
            assert status == 502
            assert body["error"] == "TokenExchangeFailed"
            assert runner.thread.is_alive()

            status, _ = _request(
                port, "POST", "/provision/companionInfo", _companion_info(info["sessionId"])
            )
            assert status == 200
            runner.join()

        assert runner.result is not None

    @pytest.mark.parametrize(
        "token_response",
        [
            {"access_token": "Atza|device-token", "expires_in": "soon"},
            {"access_token": None},
        ],
    )
    def test_malformed_token_fields_answered_with_error(
        self, token_response: dict[str, object]
    ) -> None:
        strategy = CompanionAppStrategy(_make_config())
        runner = _Runner(strategy)

        with patch(_POST_TARGET, return_value=_mock_httpx_post(token_response)):
            port = runner.start()
            _, info = _request(port, "GET", "/provision/deviceInfo")
            status, body = _request(
                port, "POST", "/provision/companionInfo", _companion_info(info["sessionId"])
            )
            assert runner.thread.is_alive()
            strategy.stop()
            runner.join()

        assert status == 502
        assert body["error"] == "TokenExchangeFailed"
        assert "malformed" in body["message"]
        assert runner.result is None
        assert isinstance(runner.error, ProvisioningError)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_method(self) -> None:
        assert CompanionAppStrategy(_make_config()).method == ProvisioningMethod.COMPANION_APP

    def test_timeout(self) -> None:
        strategy = CompanionAppStrategy(_make_config(timeout_seconds=0.1))

        with pytest.raises(ProvisioningError, match="within"):
            strategy.run()
        assert strategy.server_address is None

    def test_stop_unblocks_run(self) -> None:
        strategy = CompanionAppStrategy(_make_config(timeout_seconds=None))
        runner = _Runner(strategy)
        runner.start()

        strategy.stop()
        runner.join()

        assert isinstance(runner.error, ProvisioningError)
        assert "stopped" in str(runner.error)

    def test_stopped_strategy_refuses_to_run(self) -> None:
        strategy = CompanionAppStrategy(_make_config())
        strategy.stop()

        with pytest.raises(ProvisioningError, match="stopped"):
            strategy.run()

    def test_bind_failure(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]
            strategy = CompanionAppStrategy(_make_config(local_port=port))

            with pytest.raises(ServerStartupError, match="Cannot bind"):
                strategy.run()

    def test_bad_tls_material(self, tmp_path) -> None:
        cert = tmp_path / "cert.pem"
        key = tmp_path / "key.pem"
        cert.write_text("not a certificate")
        key.write_text("not a key")
        strategy = CompanionAppStrategy(
            _make_config(ssl_cert_file=str(cert), ssl_key_file=str(key))
        )

        with pytest.raises(ServerStartupError, match="TLS"):
            strategy.run()


class TestValidateConfig:
    def test_valid(self) -> None:
        config = _make_config()
        assert CompanionAppStrategy(config).validate_config(config) == []

    def test_bad_port_and_url(self) -> None:
        config = _make_config(local_port=70000, lwa_url="ftp://lwa")
        errors = CompanionAppStrategy(config).validate_config(config)
        assert any("localPort" in e for e in errors)
        assert any("lwaUrl" in e for e in errors)

    def test_cert_without_key(self, tmp_path) -> None:
        cert = tmp_path / "cert.pem"
        cert.write_text("x")
        config = _make_config(ssl_cert_file=str(cert))
        errors = CompanionAppStrategy(config).validate_config(config)
        assert errors == ["sslCertFile and sslKeyFile must be set together"]

    def test_missing_files(self) -> None:
        config = _make_config(ssl_cert_file="/nope/cert.pem", ssl_key_file="/nope/key.pem")
        errors = CompanionAppStrategy(config).validate_config(config)
        assert len(errors) == 2

    def test_non_positive_timeout(self) -> None:
        config = _make_config(timeout_seconds=0)
        errors = CompanionAppStrategy(config).validate_config(config)
        assert errors == ["timeoutSeconds must be positive"]
