"""Built-in CLI commands for voiceprov.

Each sub-module exposes a Typer command or command group that is registered
on the root application in :mod:`voiceprov.app`:

* :mod:`~voiceprov.commands.provision` -- ``voiceprov provision``
* :mod:`~voiceprov.commands.config` -- ``voiceprov config show|validate|init``
"""
