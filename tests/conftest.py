"""Shared test fixtures for voiceprov.

Provides reusable fixtures for device configurations, isolated config
environments, output state, fake strategies and audio controllers, and CLI
runs. These fixtures are automatically discovered by pytest and available to
all test modules without explicit imports.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

from voiceprov.auth.base import ProvisioningStrategy
from voiceprov.exceptions import ProvisioningError
from voiceprov.models import (
    CompanionAppInfo,
    CompanionServiceInfo,
    Credential,
    DeviceConfig,
    ProvisioningMethod,
)
from voiceprov.output import OutputFormat, OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> Iterator[None]:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale.
    """
    yield
    reset_output()


# ---------------------------------------------------------------------------
# Device config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def service_config() -> DeviceConfig:
    """Companion-service config with polling tuned for fast tests."""
    return DeviceConfig(
        product_id="my_device",
        dsn="123456",
        provisioning_method=ProvisioningMethod.COMPANION_SERVICE,
        companion_service=CompanionServiceInfo(
            service_url="https://companion.example.com",
            poll_interval_seconds=0.01,
            session_timeout_seconds=2,
        ),
    )


@pytest.fixture
def app_config() -> DeviceConfig:
    """Companion-app config bound to an ephemeral loopback port."""
    return DeviceConfig(
        product_id="my_device",
        dsn="123456",
        provisioning_method=ProvisioningMethod.COMPANION_APP,
        companion_app=CompanionAppInfo(
            local_port=0,
            bind_address="127.0.0.1",
            lwa_url="https://lwa.example.com/auth/O2/token",
            timeout_seconds=5,
        ),
    )


@pytest.fixture
def credential() -> Credential:
    return Credential(access_token="Atza|device-token", refresh_token="Atzr|refresh", expires_in=3600)


# ---------------------------------------------------------------------------
# Fake strategy
# ---------------------------------------------------------------------------


class ScriptedStrategy(ProvisioningStrategy):
    """Strategy whose runs follow a script of results.

    Each entry is either a :class:`Credential` to return or an exception to
    raise. When the script is exhausted the last entry repeats. ``gate``
    (if given) is waited on at the start of every run; :meth:`stop` opens
    the gate and makes pending runs fail.
    """

    def __init__(
        self,
        config: DeviceConfig,
        script: list,
        gate: Optional[threading.Event] = None,
    ) -> None:
        super().__init__(config)
        self._script = list(script)
        self._gate = gate
        self.runs = 0
        self.stopped = threading.Event()
        self.run_threads: list[str] = []
        self._lock = threading.Lock()

    @property
    def method(self) -> ProvisioningMethod:
        return self._config.provisioning_method

    def run(self) -> Credential:
        with self._lock:
            index = min(self.runs, len(self._script) - 1)
            self.runs += 1
            self.run_threads.append(threading.current_thread().name)
        if self._gate is not None:
            self._gate.wait(5)
        if self.stopped.is_set():
            raise ProvisioningError("stopped")
        outcome = self._script[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def stop(self) -> None:
        self.stopped.set()
        if self._gate is not None:
            self._gate.set()


@pytest.fixture
def scripted_strategy() -> Callable[..., ScriptedStrategy]:
    return ScriptedStrategy


# ---------------------------------------------------------------------------
# Fake audio controller
# ---------------------------------------------------------------------------


class FakeController:
    """Records every call the recording session makes."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.listeners: list = []
        self.rms_callbacks: list = []
        self.speaking = False
        self.begin_error: Optional[Exception] = None
        self.begin_gate: Optional[threading.Event] = None
        self.begin_entered = threading.Event()

    def begin_capture(self, rms_callback, listener) -> None:
        self.begin_entered.set()
        if self.begin_gate is not None:
            self.begin_gate.wait(5)
        self.calls.append("begin_capture")
        if self.begin_error is not None:
            raise self.begin_error
        self.rms_callbacks.append(rms_callback)
        self.listeners.append(listener)

    def stop_capture(self) -> None:
        self.calls.append("stop_capture")

    def is_speaking(self) -> bool:
        return self.speaking

    def processing_finished(self) -> None:
        self.calls.append("processing_finished")

    def on_user_activity(self) -> None:
        self.calls.append("user_activity")


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path so
    that tests never touch real user config, clears ``VOICEPROV_CONFIG``,
    and changes the working directory to tmp_path.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setattr("voiceprov.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("VOICEPROV_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> Iterator[OutputManager]:
    """Install a PLAIN-format, quiet OutputManager as the global output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner.

    ``result.output`` holds everything the command printed, diagnostics
    included.
    """
    from typer.testing import CliRunner

    return CliRunner()
