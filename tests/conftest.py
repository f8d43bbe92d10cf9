"""Shared test fixtures for deskauth.

Provides reusable fixtures for OAuth client registrations, isolated config
environments, output state and running CLI commands. These fixtures are
automatically discovered by pytest and available to all test modules
without explicit imports.
"""

from __future__ import annotations

import json
import logging
import socket
from pathlib import Path
from typing import Any

import pytest

from deskauth.models import OAuthConfig, Settings
from deskauth.output import OutputFormat, OutputManager, reset_output, set_output


# ---------------------------------------------------------------------------
# Auto-reset global output and logging state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager and the ``deskauth`` logger after every test.

    Both cache references to sys.stdout/sys.stderr at creation time. When
    Typer's CliRunner redirects those streams during a test and the test
    finishes, the cached references become stale ("I/O operation on closed
    file"). The CLI also stops the logger from propagating, which would
    hide records from ``caplog`` in later tests.
    """
    yield
    reset_output()
    logger = logging.getLogger("deskauth")
    logger.handlers = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Network helpers
# ---------------------------------------------------------------------------


def _free_port() -> int:
    """Ask the OS for a loopback port that is currently free."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def free_port() -> int:
    return _free_port()


@pytest.fixture
def free_ipv6_port() -> int:
    """A free port on ``::1``; skips where the IPv6 loopback is unavailable."""
    if not socket.has_ipv6:
        pytest.skip("IPv6 is not supported on this platform")
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as sock:
            sock.bind(("::1", 0))
            return sock.getsockname()[1]
    except OSError:
        pytest.skip("IPv6 loopback is not available")


# ---------------------------------------------------------------------------
# Client registration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def oauth_config(free_port: int) -> OAuthConfig:
    """A client registration whose redirect points at a free loopback port."""
    return OAuthConfig(
        client_id="test-client.apps.googleusercontent.com",
        client_secret="test-secret",
        redirect_url=f"http://127.0.0.1:{free_port}/callback",
        scopes=["https://www.googleapis.com/auth/pubsub"],
        auth_url="https://accounts.example.com/o/oauth2/auth",
        token_url="https://oauth2.example.com/token",
    )


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with short timeouts so failing tests do not hang."""
    return Settings(
        callback_timeout=10.0,
        http_timeout=5.0,
        userinfo_url="https://www.example.com/oauth2/v2/userinfo",
        app_version="9.9.9",
    )


@pytest.fixture
def installed_client_data() -> dict[str, Any]:
    """Client JSON in the shape the Google Cloud console downloads."""
    return {
        "installed": {
            "client_id": "1234.apps.googleusercontent.com",
            "project_id": "desk-project",
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "client_secret": "console-secret",
            "redirect_uris": ["http://localhost"],
        }
    }


@pytest.fixture
def client_file(tmp_path: Path, installed_client_data: dict[str, Any]) -> Path:
    path = tmp_path / "client_secret.json"
    path.write_text(json.dumps(installed_client_data), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Config isolation fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate configuration to a temporary directory.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to subdirectories of tmp_path
    so that tests never touch real user config, and clears all DESKAUTH_*
    environment variables.

    Returns:
        The tmp_path root directory for additional file creation.
    """
    monkeypatch.setattr("deskauth.config._is_xdg_platform", lambda: True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))

    for var in [
        "DESKAUTH_CALLBACK_HOST",
        "DESKAUTH_CALLBACK_TIMEOUT",
        "DESKAUTH_HTTP_TIMEOUT",
        "DESKAUTH_USERINFO_URL",
        "DESKAUTH_OPEN_BROWSER",
        "DESKAUTH_CLIENT_SECRET",
    ]:
        monkeypatch.delenv(var, raising=False)

    monkeypatch.chdir(tmp_path)
    return tmp_path


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
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
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
