"""voiceprov -- provision a device with an access token for a voice-service API.

A device obtains its OAuth2 access token through one of two provisioning
strategies, selected by its device configuration:

* **Companion app** -- the device runs a local callback server; a paired
  mobile app completes a PKCE authorization and hands the code back.
* **Companion service** -- the device registers with a remote service,
  shows a registration code to the user, and polls until sign-in completes.

The :class:`~voiceprov.auth.coordinator.ProvisioningCoordinator` drives the
configured strategy in the background and broadcasts the resulting token to
every registered listener.

Typical workflow::

    voiceprov config init --method companionService --product-id my_device \\
        --dsn 123456 --service-url https://localhost:3000
    voiceprov provision

Modules:
    app: Typer application factory and CLI entry point.
    models: Pydantic models shared across the entire package.
    config: XDG-aware device configuration loading.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
    auth: Listener registry, retry timer, strategy selection and the coordinator.
    strategies: Companion-app and companion-service provisioning strategies.
    recording: Recording session state machine (idle, capturing, finalizing).
    commands: ``config`` and ``provision`` CLI commands.
"""

__version__ = "0.1.0"
