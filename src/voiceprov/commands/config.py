"""Config commands -- inspect, check and create the device configuration.

Provides the ``voiceprov config`` sub-command group. The device config file
is resolved with :func:`~voiceprov.config.resolve_config_path`, so the global
``--config`` flag and the ``VOICEPROV_CONFIG`` environment variable apply to
every command here.
"""

from __future__ import annotations

from typing import Optional

import typer

from voiceprov.exceptions import ConfigError
from voiceprov.exit_codes import EXIT_INVALID_USAGE
from voiceprov.models import ProvisioningMethod
from voiceprov.output import error, format_response, info, success, suggest


config_app = typer.Typer(no_args_is_help=True)


def _cli_config_path(ctx: typer.Context) -> Optional[str]:
    return ctx.obj.get("config_path") if ctx.obj else None


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Show the device configuration.

    Prints the resolved config file path followed by the configuration in
    its camelCase on-disk form.

    Example::

        voiceprov config show
        voiceprov --json config show
    """
    from voiceprov.config import load_device_config, resolve_config_path

    path = resolve_config_path(_cli_config_path(ctx))
    try:
        config = load_device_config(path)
    except ConfigError as exc:
        error(str(exc))
        suggest("Create one with: voiceprov config init --help")
        raise typer.Exit(code=exc.exit_code) from None

    info(f"Config file: {path}")
    format_response(config.model_dump(mode="json", by_alias=True, exclude_none=True))


@config_app.command("validate")
def config_validate(ctx: typer.Context) -> None:
    """Check the device configuration without provisioning.

    Runs the schema validation and the selected strategy's own checks
    (port range, URLs, certificate files).

    Raises:
        typer.Exit: With the config-error exit code when any check fails.
    """
    from voiceprov.auth import validate_device_config
    from voiceprov.config import load_device_config, resolve_config_path

    path = resolve_config_path(_cli_config_path(ctx))
    try:
        config = load_device_config(path)
    except ConfigError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    problems = validate_device_config(config)
    if problems:
        for problem in problems:
            error(problem)
        raise typer.Exit(code=ConfigError.exit_code)
    success(f"{path} is valid ({config.provisioning_method.value})")


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    method: ProvisioningMethod = typer.Option(
        ..., "--method", "-m", help="Provisioning method."
    ),
    product_id: str = typer.Option(..., "--product-id", help="Product id of the device type."),
    dsn: str = typer.Option(..., "--dsn", help="Device serial number."),
    service_url: Optional[str] = typer.Option(
        None, "--service-url", help="Companion service base URL (companionService only)."
    ),
    port: int = typer.Option(
        443, "--port", help="Callback server port (companionApp only)."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing config file."
    ),
) -> None:
    """Create a device configuration file.

    Writes to the path given with the global ``--config`` flag, or to the
    user config directory.

    Example::

        voiceprov config init --method companionService \\
            --product-id my_device --dsn 123456 --service-url https://localhost:3000
        voiceprov -c ./voiceprov.json config init --method companionApp \\
            --product-id my_device --dsn 123456 --port 8443
    """
    from pathlib import Path

    from pydantic import ValidationError

    from voiceprov.config import default_config_path, save_device_config
    from voiceprov.models import CompanionAppInfo, CompanionServiceInfo, DeviceConfig

    cli_path = _cli_config_path(ctx)
    target = Path(cli_path).expanduser() if cli_path else default_config_path()
    if target.exists() and not force:
        error(f"Config file already exists: {target}")
        suggest("Pass --force to overwrite it.")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    if method == ProvisioningMethod.COMPANION_SERVICE and not service_url:
        error("--service-url is required for the companionService method")
        raise typer.Exit(code=EXIT_INVALID_USAGE)

    try:
        config = DeviceConfig(
            product_id=product_id,
            dsn=dsn,
            provisioning_method=method,
            companion_app=CompanionAppInfo(local_port=port)
            if method == ProvisioningMethod.COMPANION_APP
            else None,
            companion_service=CompanionServiceInfo(service_url=service_url)
            if service_url
            else None,
        )
    except ValidationError as exc:
        error(f"Validation error: {exc}")
        raise typer.Exit(code=EXIT_INVALID_USAGE) from None

    written = save_device_config(config, target)
    success(f"Wrote device config to {written}")
    suggest("Check it with: voiceprov config validate")
