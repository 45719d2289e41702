"""``voiceprov provision`` -- run the configured provisioning strategy once.

Builds a :class:`~voiceprov.auth.coordinator.ProvisioningCoordinator` from
the device config, registers a console listener, and blocks until a
credential arrives, provisioning fails terminally, or ``--timeout`` elapses.
"""

from __future__ import annotations

from typing import Any, Optional

import typer

from voiceprov.exceptions import ConfigError
from voiceprov.exit_codes import EXIT_PROVISIONING_FAILURE
from voiceprov.models import CoordinatorState
from voiceprov.output import error, format_response, info, success, suggest


class _ConsoleListener:
    """Announces the credential on stderr as soon as it is broadcast."""

    def on_credential_received(self, token: str) -> None:
        success("Device provisioned -- access token received.")


def provision_command(
    ctx: typer.Context,
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        "-t",
        min=0,
        help="Give up after this many seconds (default: wait until done).",
    ),
    show_token: bool = typer.Option(
        False, "--show-token", help="Print the full access token to stdout."
    ),
) -> None:
    """Obtain an access token for this device.

    For the companionService method a registration URL is shown; open it in
    a browser and sign in. Attempts are retried every 30 seconds until one
    succeeds. For the companionApp method the device waits for the paired
    mobile app to call back.

    Raises:
        typer.Exit: With the provisioning-failure exit code on terminal
            failure or timeout, or the config-error exit code when the
            device config cannot be used.

    Example::

        voiceprov provision
        voiceprov --json provision --timeout 600
    """
    from voiceprov.auth import ProvisioningCoordinator, validate_device_config
    from voiceprov.config import load_device_config

    cli_path = ctx.obj.get("config_path") if ctx.obj else None
    try:
        config = load_device_config(cli_path)
    except ConfigError as exc:
        error(str(exc))
        suggest("Create one with: voiceprov config init --help")
        raise typer.Exit(code=exc.exit_code) from None

    problems = validate_device_config(config)
    if problems:
        for problem in problems:
            error(problem)
        raise typer.Exit(code=ConfigError.exit_code)

    info(f"Provisioning {config.product_id} ({config.dsn}) via {config.provisioning_method.value}")
    with ProvisioningCoordinator(config) as coordinator:
        coordinator.register_listener(_ConsoleListener())
        coordinator.start()
        credential = coordinator.wait_for_credential(timeout)
        last_error = coordinator.last_error
        state = coordinator.state

    if credential is None:
        if state == CoordinatorState.FAILED and last_error is not None:
            error(f"Provisioning failed: {last_error}")
            raise typer.Exit(code=last_error.exit_code)
        error("Provisioning timed out before a credential was received")
        if last_error is not None:
            info(f"Last attempt failed with: {last_error}")
        raise typer.Exit(code=EXIT_PROVISIONING_FAILURE)

    result: dict[str, Any] = {
        "provisioned": True,
        "method": config.provisioning_method.value,
        "token_type": credential.token_type,
        "expires_in": credential.expires_in,
    }
    if show_token:
        result["access_token"] = credential.access_token
    format_response(result)
