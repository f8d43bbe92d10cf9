"""Configuration management with XDG paths, atomic writes, and precedence resolution.

This module handles everything deskauth reads from disk or the environment:

* **Directory layout** -- XDG Base Directory compliant on Linux/BSD,
  ``~/.deskauth/`` on macOS and Windows. See :func:`get_config_dir` and
  :func:`get_data_dir`.
* **Settings** -- a single :class:`~deskauth.models.Settings` JSON file.
  :func:`resolve_settings` layers ``DESKAUTH_*`` environment variables
  over it.
* **Client registration** -- :func:`load_oauth_config` reads the client
  JSON downloaded from the provider's console into an
  :class:`~deskauth.models.OAuthConfig`.
* **Credential resolution** -- :func:`resolve_credential` reads secrets
  such as a refresh token from env vars, files, or an interactive prompt.

Tokens are never written here; persisting them is the application's job.
"""

from __future__ import annotations

import getpass
import json
import os
import platform
import sys
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from deskauth.exceptions import ConfigError
from deskauth.models import DEFAULT_REDIRECT_URL, DEFAULT_SCOPES, OAuthConfig, Settings

_APP_NAME = "deskauth"
_CONFIG_FILENAME = "config.json"

# Environment variable -> Settings field
_ENV_OVERRIDES = {
    "DESKAUTH_CALLBACK_HOST": "callback_host",
    "DESKAUTH_CALLBACK_TIMEOUT": "callback_timeout",
    "DESKAUTH_HTTP_TIMEOUT": "http_timeout",
    "DESKAUTH_USERINFO_URL": "userinfo_url",
    "DESKAUTH_OPEN_BROWSER": "open_browser",
}


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

    On Linux/BSD: ``$XDG_CONFIG_HOME/deskauth/`` (default ``~/.config/deskauth/``).
    On macOS/Windows: ``~/.deskauth/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_CONFIG_HOME", (".config",)) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_dir() -> Path:
    """Return the data directory, creating it if necessary.

    Crash logs are written to its ``logs/`` subdirectory.

    On Linux/BSD: ``$XDG_DATA_HOME/deskauth/`` (default ``~/.local/share/deskauth/``).
    On macOS/Windows: ``~/.deskauth/``.
    """
    if _is_xdg_platform():
        path = _xdg_base("XDG_DATA_HOME", (".local", "share")) / _APP_NAME
    else:
        path = _fallback_base_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is an atomic rename on POSIX systems. On any failure the
    temp file is removed.
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
        fd = None  # prevent double-close below
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


# --- Settings ---


def _settings_path() -> Path:
    return get_config_dir() / _CONFIG_FILENAME


def load_settings() -> Settings:
    """Load settings from the config directory.

    Returns:
        The stored :class:`~deskauth.models.Settings`, or defaults if the
        file does not exist.

    Raises:
        ConfigError: If the file exists but is invalid JSON or fails
            validation.
    """
    path = _settings_path()
    if not path.is_file():
        return Settings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Settings.model_validate(data)
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigError(f"Invalid settings at {path}: {exc}") from exc


def save_settings(settings: Settings) -> None:
    """Persist settings atomically. ``app_version`` is not stored."""
    data = settings.model_dump(mode="json", exclude={"app_version"})
    _atomic_write(_settings_path(), json.dumps(data, indent=2) + "\n")


def resolve_settings(**overrides: Any) -> Settings:
    """Resolve settings with the full precedence chain.

    Precedence (high to low):
        1. Keyword *overrides* (CLI flags); ``None`` values are ignored
        2. ``DESKAUTH_*`` environment variables
        3. The settings file
        4. Defaults

    Raises:
        ConfigError: If any layer yields an invalid value.
    """
    data = load_settings().model_dump(mode="json", exclude={"app_version"})
    for env_var, field_name in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            data[field_name] = value
    data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid settings: {exc}") from exc


# --- Client registration ---


def load_oauth_config(
    path: Union[str, Path],
    redirect_url: Optional[str] = None,
    scopes: Optional[list[str]] = None,
) -> OAuthConfig:
    """Load the OAuth client registration from a JSON file.

    Accepts the file downloaded from the Google Cloud console (an
    ``"installed"`` or ``"web"`` section with ``client_id``,
    ``client_secret``, ``auth_uri`` and ``token_uri``) as well as a flat
    object using :class:`~deskauth.models.OAuthConfig` field names.

    The console file lists several redirect URIs; the flow always uses
    *redirect_url* (default ``http://localhost:8888/callback``), which must
    be among the URIs registered with the provider. ``DESKAUTH_CLIENT_SECRET``
    overrides the secret in the file.

    Args:
        path: Path to the client JSON file.
        redirect_url: Loopback redirect URL to use.
        scopes: Scopes to request (default: Pub/Sub).

    Raises:
        ConfigError: If the file is missing, not JSON, or incomplete.
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise ConfigError(f"OAuth client file not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        raise ConfigError(f"Cannot read OAuth client file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"OAuth client file {path} must contain a JSON object")

    section = raw.get("installed") or raw.get("web")
    if isinstance(section, dict):
        data: dict[str, Any] = {
            "client_id": section.get("client_id", ""),
            "client_secret": section.get("client_secret"),
        }
        if section.get("auth_uri"):
            data["auth_url"] = section["auth_uri"]
        if section.get("token_uri"):
            data["token_url"] = section["token_uri"]
        data["redirect_url"] = DEFAULT_REDIRECT_URL
        data["scopes"] = list(DEFAULT_SCOPES)
    else:
        data = dict(raw)

    if redirect_url is not None:
        data["redirect_url"] = redirect_url
    if scopes:
        data["scopes"] = scopes
    env_secret = os.environ.get("DESKAUTH_CLIENT_SECRET")
    if env_secret:
        data["client_secret"] = env_secret

    try:
        return OAuthConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid OAuth client configuration in {path}: {exc}") from exc


# --- Credential source resolution ---


def resolve_credential(source: str) -> str:
    """Resolve a credential from its source descriptor.

    Supported formats:
        - ``"env:VAR_NAME"`` -- reads ``os.environ["VAR_NAME"]``
        - ``"file:/path/to/file"`` -- reads file content, stripped of whitespace
        - ``"prompt"`` -- prompts user interactively (requires a TTY)

    Raises:
        ConfigError: If the source can't be resolved.
    """
    if source.startswith("env:"):
        var_name = source[4:]
        value = os.environ.get(var_name)
        if value is None:
            raise ConfigError(
                f"Environment variable '{var_name}' is not set (source: {source})"
            )
        return value

    if source.startswith("file:"):
        path = Path(source[5:]).expanduser()
        if not path.is_file():
            raise ConfigError(f"Credential file not found: {path} (source: {source})")
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"Cannot read credential file {path}: {exc}") from exc

    if source == "prompt":
        if not sys.stdin.isatty():
            raise ConfigError(
                "Cannot prompt for credentials: stdin is not a TTY (source: prompt)"
            )
        return getpass.getpass("Enter credential: ")

    raise ConfigError(f"Unknown credential source format: {source}")
