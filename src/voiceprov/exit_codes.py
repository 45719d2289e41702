"""Numeric process exit codes following `clig.dev <https://clig.dev/>`_ conventions.

Each constant maps to a specific error category and is referenced by the
corresponding :class:`~voiceprov.exceptions.VoiceprovError` subclass.
Wrapper scripts (systemd units, kiosk launchers) can inspect the exit code to
tell a bad configuration apart from a provisioning failure.

Example::

    $ voiceprov provision --timeout 60
    $ echo $?
    3   # EXIT_PROVISIONING_FAILURE -- no token was obtained
"""

EXIT_SUCCESS = 0
"""The command completed successfully."""

EXIT_GENERIC_FAILURE = 1
"""An unclassified error occurred."""

EXIT_INVALID_USAGE = 2
"""The command was invoked with invalid arguments or missing required parameters."""

EXIT_PROVISIONING_FAILURE = 3
"""The device could not be provisioned with an access token."""

EXIT_CONNECTION_ERROR = 6
"""The callback server could not start or a remote endpoint was unreachable."""
