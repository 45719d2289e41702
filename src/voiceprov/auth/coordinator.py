"""Provisioning coordinator -- runs the configured strategy and broadcasts its result.

The :class:`ProvisioningCoordinator` is the central piece of the
provisioning subsystem. It owns:

* the strategy selected by the device configuration,
* a single background worker on which every attempt runs, so that
  :meth:`~ProvisioningCoordinator.start` never blocks its caller,
* for the companion-service method, a :class:`~voiceprov.auth.timer.PeriodicTimer`
  that re-runs the strategy every 30 seconds until it succeeds,
* the one authoritative success flag, and
* the :class:`~voiceprov.auth.listeners.CredentialListenerRegistry` that
  receives the token.

State machine::

    NOT_STARTED --start()--> RUNNING --success--> SUCCEEDED
                             RUNNING --failure--> RUNNING   (companion service: retried)
                             RUNNING --failure--> FAILED    (companion app: terminal)

The success flag is flipped under a lock by whichever attempt finishes
first, which then cancels the retry timer and broadcasts. Every other path
observes the flag and does nothing, so a credential is broadcast at most
once per coordinator.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from voiceprov.auth.base import ProvisioningStrategy, RegistrationCodeDisplay
from voiceprov.auth.listeners import CredentialListenerRegistry, Listener
from voiceprov.auth.manager import create_strategy
from voiceprov.auth.timer import PeriodicTimer
from voiceprov.exceptions import (
    ConfigError,
    InvalidSessionError,
    ProvisioningError,
    ServerStartupError,
)
from voiceprov.models import CoordinatorState, Credential, DeviceConfig, ProvisioningMethod

logger = logging.getLogger(__name__)

RETRY_INTERVAL_SECONDS = 30.0
"""Period of the companion-service retry timer."""


class ProvisioningCoordinator:
    """Drives the configured provisioning strategy and fans out the credential.

    Args:
        config: The device configuration; selects the strategy.
        display: Registration-code display callback handed to the
            companion-service strategy.
        registry: Listener registry to broadcast into. A fresh one is
            created when omitted.
        strategy: Pre-built strategy, mostly for tests. Must implement the
            configured method.
        retry_interval: Seconds between companion-service attempts.
        stop_on_invalid_session: Give up instead of retrying when the
            companion service reports an invalid session. Each attempt opens
            a fresh session, so retrying is the default.

    Example::

        coordinator = ProvisioningCoordinator(load_device_config())
        coordinator.register_listener(api_client)
        coordinator.start()          # returns immediately
        coordinator.wait_for_credential(timeout=600)
    """

    def __init__(
        self,
        config: DeviceConfig,
        display: Optional[RegistrationCodeDisplay] = None,
        registry: Optional[CredentialListenerRegistry] = None,
        strategy: Optional[ProvisioningStrategy] = None,
        retry_interval: float = RETRY_INTERVAL_SECONDS,
        stop_on_invalid_session: bool = False,
    ) -> None:
        self._config = config
        self._registry = registry if registry is not None else CredentialListenerRegistry()
        self._strategy = strategy if strategy is not None else create_strategy(config, display)
        if self._strategy.method != config.provisioning_method:
            raise ConfigError(
                f"Strategy for '{self._strategy.method.value}' cannot serve "
                f"provisioning method '{config.provisioning_method.value}'"
            )
        self._retry_interval = retry_interval
        self._stop_on_invalid_session = stop_on_invalid_session

        self._lock = threading.Lock()
        self._state = CoordinatorState.NOT_STARTED
        self._succeeded = False
        self._in_flight = False
        self._shutdown = False
        self._attempts = 0
        self._credential: Optional[Credential] = None
        self._last_error: Optional[ProvisioningError] = None
        self._done = threading.Event()

        self._timer: Optional[PeriodicTimer] = None
        self._worker: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="voiceprov-provision"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def registry(self) -> CredentialListenerRegistry:
        return self._registry

    @property
    def strategy(self) -> ProvisioningStrategy:
        return self._strategy

    @property
    def state(self) -> CoordinatorState:
        with self._lock:
            return self._state

    @property
    def succeeded(self) -> bool:
        with self._lock:
            return self._succeeded

    @property
    def credential(self) -> Optional[Credential]:
        with self._lock:
            return self._credential

    @property
    def last_error(self) -> Optional[ProvisioningError]:
        """The failure of the most recent unsuccessful attempt, if any."""
        with self._lock:
            return self._last_error

    @property
    def attempts(self) -> int:
        """Number of strategy runs started so far."""
        with self._lock:
            return self._attempts

    def register_listener(self, listener: Listener) -> bool:
        """Shortcut for ``coordinator.registry.register(listener)``."""
        return self._registry.register(listener)

    def start(self) -> None:
        """Begin provisioning in the background and return immediately.

        Raises:
            ProvisioningError: If the coordinator was already started or
                has been shut down.
        """
        with self._lock:
            if self._shutdown:
                raise ProvisioningError("Coordinator has been shut down")
            if self._state != CoordinatorState.NOT_STARTED:
                raise ProvisioningError("Provisioning has already been started")
            self._state = CoordinatorState.RUNNING

        method = self._config.provisioning_method
        logger.info("Starting %s provisioning", method.value)
        if method == ProvisioningMethod.COMPANION_SERVICE:
            # The tick at time 0 is the immediate first attempt.
            self._timer = PeriodicTimer(
                self._retry_interval, self._on_tick, name="voiceprov-retry"
            )
            self._timer.start()
        else:
            self._submit()

    def retry_now(self) -> bool:
        """Request an attempt right away, outside the retry schedule.

        For the companion-app method this is the external restart after a
        terminal failure. Safe to call concurrently with the retry timer.

        Returns:
            ``True`` if an attempt was dispatched, ``False`` if provisioning
            already succeeded or an attempt is still in progress.

        Raises:
            ProvisioningError: If :meth:`start` has not been called.
        """
        with self._lock:
            if self._state == CoordinatorState.NOT_STARTED:
                raise ProvisioningError("Provisioning has not been started")
            if self._state == CoordinatorState.FAILED:
                self._state = CoordinatorState.RUNNING
                self._done.clear()
        return self._submit()

    def wait_for_credential(self, timeout: Optional[float] = None) -> Optional[Credential]:
        """Block until provisioning succeeds, fails terminally, or is shut down.

        Returns:
            The credential, or ``None`` on timeout, terminal failure or
            shutdown.
        """
        self._done.wait(timeout)
        return self.credential

    def shutdown(self, wait: bool = True) -> None:
        """Cancel the retry timer, stop the strategy and release the worker.

        Safe to call more than once, including from a listener running on
        the worker thread; the worker is then left to finish on its own.
        """
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._cancel_timer()
        self._strategy.stop()
        # The worker cannot join itself.
        on_worker = threading.current_thread() is self._worker
        self._executor.shutdown(wait=wait and not on_worker, cancel_futures=True)
        if self._timer is not None and wait:
            self._timer.join(timeout=self._retry_interval)
        self._done.set()
        logger.debug("Provisioning coordinator shut down")

    def __enter__(self) -> "ProvisioningCoordinator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Attempt scheduling
    # ------------------------------------------------------------------

    def _on_tick(self) -> None:
        if not self._submit():
            logger.debug("Retry tick skipped")

    def _submit(self) -> bool:
        with self._lock:
            if self._succeeded or self._shutdown or self._in_flight:
                return False
            self._in_flight = True
        try:
            self._executor.submit(self._attempt)
        except RuntimeError:
            # Executor was shut down between the check and the submit.
            with self._lock:
                self._in_flight = False
            return False
        return True

    def _attempt(self) -> None:
        self._worker = threading.current_thread()
        with self._lock:
            if self._succeeded:
                self._in_flight = False
                return
            self._attempts += 1
            number = self._attempts
        logger.info("Provisioning attempt %d (%s)", number, self._strategy.method.value)
        try:
            credential = self._strategy.run()
        except ProvisioningError as exc:
            self._attempt_failed(number, exc)
        except Exception as exc:
            logger.exception("Unexpected error in provisioning attempt %d", number)
            failure = ProvisioningError(f"Unexpected error: {exc}")
            failure.__cause__ = exc
            self._attempt_failed(number, failure)
        else:
            self._attempt_succeeded(number, credential)
        finally:
            with self._lock:
                self._in_flight = False

    def _attempt_succeeded(self, number: int, credential: Credential) -> None:
        with self._lock:
            self._in_flight = False
            if self._succeeded:
                logger.debug("Discarding credential from attempt %d; already provisioned", number)
                return
            self._succeeded = True
            self._state = CoordinatorState.SUCCEEDED
            self._credential = credential
            self._last_error = None
        self._cancel_timer()
        logger.info("Provisioning succeeded on attempt %d", number)
        self._registry.broadcast(credential.access_token)
        self._done.set()

    def _attempt_failed(self, number: int, exc: ProvisioningError) -> None:
        with self._lock:
            stopping = self._shutdown
        if stopping:
            logger.info("Provisioning attempt %d ended by shutdown: %s", number, exc)
            with self._lock:
                self._in_flight = False
                self._last_error = exc
            return
        if isinstance(exc, ServerStartupError):
            logger.error("Failed to start companion app provisioning server: %s", exc)
        elif isinstance(exc, InvalidSessionError):
            logger.error(
                "Could not authenticate. Did you sign in before confirming the registration code?"
            )
            logger.error("Provisioning attempt %d failed: %s", number, exc)
        else:
            logger.error("Provisioning attempt %d failed: %s", number, exc)

        terminal = self._config.provisioning_method == ProvisioningMethod.COMPANION_APP or (
            self._stop_on_invalid_session and isinstance(exc, InvalidSessionError)
        )
        with self._lock:
            self._in_flight = False
            self._last_error = exc
            if terminal and not self._succeeded:
                self._state = CoordinatorState.FAILED
        if terminal:
            self._cancel_timer()
            logger.error("Provisioning will not be retried automatically")
            self._done.set()

    def _cancel_timer(self) -> None:
        timer = self._timer
        if timer is not None and timer.cancel():
            logger.debug("Retry timer cancelled")
