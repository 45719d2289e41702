"""Device configuration with XDG paths, atomic writes, and precedence resolution.

This module handles all persistent configuration for voiceprov:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.voiceprov/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Device config** -- a single JSON or YAML document deserialised into a
  :class:`~voiceprov.models.DeviceConfig`. Managed via
  :func:`load_device_config` and :func:`save_device_config`.
* **Precedence resolution** -- :func:`resolve_config_path` picks the config
  file from the CLI flag, the ``VOICEPROV_CONFIG`` environment variable, a
  project-local ``voiceprov.json``, or the user config directory.

The config is read once at startup; the provisioning core never writes it.
"""

from __future__ import annotations

import json
import os
import platform
import tempfile
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from voiceprov.exceptions import ConfigError
from voiceprov.models import DeviceConfig

_APP_NAME = "voiceprov"
_CONFIG_FILENAME = "config.json"
_PROJECT_CONFIG_FILENAME = "voiceprov.json"
_ENV_CONFIG = "VOICEPROV_CONFIG"


# --- XDG path resolution ---


def _is_xdg_platform() -> bool:
    """Return True if the platform supports XDG Base Directory spec (Linux/FreeBSD)."""
    return platform.system() == "Linux" or platform.system().endswith("BSD")


def _fallback_base_dir() -> Path:
    """Fallback base directory for non-XDG platforms (macOS, Windows)."""
    return Path.home() / f".{_APP_NAME}"


def _xdg_base(env_var: str, default_segments: tuple[str, ...]) -> Path:
    """Resolve an XDG base directory from an env var with fallback segments under $HOME."""
    env_value = os.environ.get(env_var, "")
    if env_value:
        return Path(env_value)
    base = Path.home()
    for seg in default_segments:
        base = base / seg
    return base


def get_config_dir() -> Path:
    """Return the configuration directory, creating it if necessary.

    On Linux/BSD: ``$XDG_CONFIG_HOME/voiceprov/`` (default ``~/.config/voiceprov/``).
    On macOS/Windows: ``~/.voiceprov/``.

    Returns:
        Absolute path to the configuration directory (guaranteed to exist).
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_CONFIG_HOME", (".config",))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory (crash logs), creating it if necessary.

    On Linux/BSD: ``$XDG_DATA_HOME/voiceprov/`` (default ``~/.local/share/voiceprov/``).
    On macOS/Windows: ``~/.voiceprov/logs/``.
    """
    if _is_xdg_platform():
        base = _xdg_base("XDG_DATA_HOME", (".local", "share"))
        path = base / _APP_NAME
    else:
        path = _fallback_base_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. On any failure the
    temp file is cleaned up and the original file is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- Path precedence ---


def default_config_path() -> Path:
    """Path of the user-level device config (``<config_dir>/config.json``)."""
    return get_config_dir() / _CONFIG_FILENAME


def resolve_config_path(cli_path: Optional[str] = None) -> Path:
    """Resolve which device config file to load.

    Precedence (high to low):
        1. CLI flag (``--config``)
        2. Environment variable ``VOICEPROV_CONFIG``
        3. Project config (``./voiceprov.json``)
        4. User config (``~/.config/voiceprov/config.json``)

    The returned path is not checked for existence except for the project
    config, which is only selected when present.
    """
    if cli_path:
        return Path(cli_path).expanduser()
    env_path = os.environ.get(_ENV_CONFIG)
    if env_path:
        return Path(env_path).expanduser()
    project = Path.cwd() / _PROJECT_CONFIG_FILENAME
    if project.is_file():
        return project
    return default_config_path()


# --- Device config ---


def load_device_config(path: Optional[Path | str] = None) -> DeviceConfig:
    """Load and validate the device configuration.

    Args:
        path: Explicit config file. When ``None`` the path is resolved with
            :func:`resolve_config_path`.

    Returns:
        The validated :class:`~voiceprov.models.DeviceConfig`.

    Raises:
        ConfigError: If the file does not exist, cannot be parsed as JSON or
            YAML, or fails validation.
    """
    config_path = Path(path).expanduser() if path is not None else resolve_config_path()
    if not config_path.is_file():
        raise ConfigError(f"Device config not found at {config_path}")
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read device config {config_path}: {exc}") from exc

    data = _parse_content(text, config_path)
    try:
        return DeviceConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid device config at {config_path}: {exc}") from exc


def save_device_config(config: DeviceConfig, path: Optional[Path | str] = None) -> Path:
    """Persist a device configuration atomically as JSON.

    Keys are written in the camelCase form used by existing device config
    files so the result can be shared with other clients.

    Args:
        config: The configuration to save.
        path: Destination; defaults to :func:`default_config_path`.

    Returns:
        The path that was written.
    """
    target = Path(path).expanduser() if path is not None else default_config_path()
    data = config.model_dump(mode="json", by_alias=True, exclude_none=True)
    _atomic_write(target, json.dumps(data, indent=2) + "\n")
    return target


def _parse_content(text: str, path: Path) -> dict[str, Any]:
    """Parse config text as JSON or YAML, guided by the file extension."""
    suffix = path.suffix.lower()
    if suffix == ".json":
        parsers = (_parse_json,)
    elif suffix in (".yaml", ".yml"):
        parsers = (_parse_yaml,)
    else:
        parsers = (_parse_json, _parse_yaml)

    last_exc: Exception | None = None
    for parser in parsers:
        try:
            data = parser(text)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            last_exc = exc
            continue
        if not isinstance(data, dict):
            raise ConfigError(f"Device config at {path} must be a mapping, got {type(data).__name__}")
        return data
    raise ConfigError(f"Cannot parse device config at {path}: {last_exc}")


def _parse_json(text: str) -> Any:
    return json.loads(text)


def _parse_yaml(text: str) -> Any:
    return yaml.safe_load(text)
