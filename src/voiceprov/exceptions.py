"""Exception hierarchy for voiceprov.

All exceptions inherit from :class:`VoiceprovError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`voiceprov.exit_codes`.
The CLI entry point in :func:`voiceprov.app.main` catches ``VoiceprovError``
and exits with the appropriate code. Inside the library none of these are
fatal: the coordinator, the listener registry and the recording session each
catch their own failures at their boundary and log them.

Subclass hierarchy::

    VoiceprovError (exit 1)
    +-- ConfigError              (exit 1)
    +-- ProvisioningError        (exit 3)
    |   +-- InvalidSessionError  (exit 3)
    |   +-- ServerStartupError   (exit 6)
    +-- ListenerError            (exit 1)
    +-- CaptureRequestError      (exit 1)
"""

from __future__ import annotations

from typing import Any, Optional

from voiceprov.exit_codes import (
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_PROVISIONING_FAILURE,
)


class VoiceprovError(Exception):
    """Base exception for all voiceprov errors.

    Args:
        message: Human-readable error description printed to stderr.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(VoiceprovError):
    """Raised for configuration problems (missing file, invalid JSON/YAML, failed validation)."""

    exit_code = EXIT_GENERIC_FAILURE


class ProvisioningError(VoiceprovError):
    """Raised by a provisioning strategy when it cannot produce a credential.

    Covers network errors, malformed responses, expired handshakes and
    rejected authorization codes. The coordinator retries these for the
    companion-service strategy only.
    """

    exit_code = EXIT_PROVISIONING_FAILURE


class InvalidSessionError(ProvisioningError):
    """Raised when the companion service reports that the session id is no longer valid.

    Usually means the user confirmed the registration code before signing in.
    """


class ServerStartupError(ProvisioningError):
    """Raised when the companion-app callback server cannot bind or start."""

    exit_code = EXIT_CONNECTION_ERROR


class ListenerError(VoiceprovError):
    """Wraps an exception raised by one credential listener during a broadcast.

    Never raised by the registry; instances are returned from
    :meth:`~voiceprov.auth.listeners.CredentialListenerRegistry.broadcast`
    so callers can report them.

    Args:
        listener: The listener that failed.
        cause: The exception it raised.
    """

    def __init__(self, listener: Any, cause: BaseException):
        super().__init__(f"Credential listener {listener!r} failed: {cause}")
        self.listener = listener
        self.cause = cause


class CaptureRequestError(VoiceprovError):
    """Raised (and surfaced to the error callback) when a capture request fails.

    Args:
        message: Human-readable error description.
        cause: The underlying exception reported by the audio controller.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
