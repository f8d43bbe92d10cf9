"""Auth commands -- sign in, refresh, and identify.

Provides the top-level ``login``, ``refresh`` and ``whoami`` commands.
Each takes the OAuth client JSON downloaded from the Google Cloud console
and prints its result to stdout; nothing is written to disk.

Typical workflow::

    deskauth login client_secret.json --json > token.json
    deskauth refresh client_secret.json --refresh-token file:refresh.txt
    deskauth whoami client_secret.json --access-token env:ACCESS_TOKEN
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import typer

from deskauth.output import debug, error, format_response, info, show_url, success, suggest, warning


_PROGRESS = {
    "awaiting_callback": "Waiting for you to finish signing in in the browser...",
    "exchanging_code": "Exchanging authorization code...",
    "resolving_identity": "Looking up your account...",
}


def _token_payload(token: Any, user_email: Optional[str] = None) -> dict[str, Any]:
    """Flatten a token (and optionally its owner) for stdout."""
    payload: dict[str, Any] = {}
    if user_email is not None:
        payload["user_email"] = user_email
    payload.update(token.model_dump(mode="json"))
    return payload


def _suggest_for(exc: Exception) -> None:
    from deskauth.exceptions import (
        ListenerBindError,
        RefreshError,
        StateMismatchError,
    )

    if isinstance(exc, ListenerBindError):
        suggest("Close other sign-in windows or free the port, then retry.")
    elif isinstance(exc, StateMismatchError):
        suggest("Close stale browser tabs from earlier sign-ins and run 'deskauth login' again.")
    elif isinstance(exc, RefreshError):
        suggest("Run 'deskauth login' to sign in again.")


def login_command(
    client_file: Path = typer.Argument(
        help="OAuth client JSON downloaded from the Google Cloud console."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the browser sign-in."
    ),
    no_browser: bool = typer.Option(
        False, "--no-browser", help="Print the sign-in URL instead of opening a browser."
    ),
    redirect_url: Optional[str] = typer.Option(
        None, "--redirect-url", help="Loopback redirect URL registered for the client."
    ),
    scope: Optional[list[str]] = typer.Option(
        None, "--scope", help="Scope to request (repeatable)."
    ),
) -> None:
    """Sign in through the browser and print the issued token.

    Starts a listener on the client's loopback redirect port, opens the
    Google consent page, waits for the redirect and exchanges the code.
    If no browser can be opened the URL is printed to stderr and the
    listener keeps waiting.

    Example::

        deskauth login client_secret.json
        deskauth login client_secret.json --no-browser --timeout 120
    """
    from deskauth.auth import AuthContext, OAuthAuthenticator
    from deskauth.config import load_oauth_config, resolve_settings
    from deskauth.exceptions import DeskauthError
    from deskauth.models import FlowState

    try:
        settings = resolve_settings(
            callback_timeout=timeout,
            open_browser=False if no_browser else None,
        )
        config = load_oauth_config(client_file, redirect_url=redirect_url, scopes=scope)
    except DeskauthError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    def _manual_url(url: str) -> None:
        if settings.open_browser:
            warning("Could not open a browser.")
        info("Open this URL in your browser to sign in:")
        show_url(url)

    def _observe(state: FlowState) -> None:
        message = _PROGRESS.get(state.value)
        if message:
            info(message)
        else:
            debug(f"Sign-in state: {state.value}")

    authenticator = OAuthAuthenticator(
        config,
        settings,
        manual_url_handler=_manual_url,
        state_observer=_observe,
    )
    result = authenticator.authenticate(AuthContext(timeout=settings.callback_timeout))
    if not result.success:
        error(result.error_msg)
        if result.error is not None:
            _suggest_for(result.error)
            raise typer.Exit(code=result.error.exit_code)
        raise typer.Exit(code=1)

    assert result.token is not None
    success(f"Signed in as {result.user_email}")
    format_response(_token_payload(result.token, result.user_email))


def refresh_command(
    client_file: Path = typer.Argument(
        help="OAuth client JSON downloaded from the Google Cloud console."
    ),
    refresh_token: str = typer.Option(
        ..., "--refresh-token", help="Source of the refresh token: env:VAR, file:PATH or prompt."
    ),
) -> None:
    """Trade a refresh token for a new access token.

    Example::

        deskauth refresh client_secret.json --refresh-token env:REFRESH_TOKEN
    """
    from deskauth.auth import AuthContext, OAuthAuthenticator
    from deskauth.config import load_oauth_config, resolve_credential, resolve_settings
    from deskauth.exceptions import DeskauthError
    from deskauth.models import OAuthToken

    try:
        settings = resolve_settings()
        config = load_oauth_config(client_file)
        old = OAuthToken(access_token="", refresh_token=resolve_credential(refresh_token))
        token = OAuthAuthenticator(config, settings).refresh_token(
            old, AuthContext(timeout=settings.http_timeout)
        )
    except DeskauthError as exc:
        error(str(exc))
        _suggest_for(exc)
        raise typer.Exit(code=exc.exit_code) from None

    success("Access token refreshed.")
    format_response(_token_payload(token))


def whoami_command(
    client_file: Path = typer.Argument(
        help="OAuth client JSON downloaded from the Google Cloud console."
    ),
    access_token: str = typer.Option(
        ..., "--access-token", help="Source of the access token: env:VAR, file:PATH or prompt."
    ),
) -> None:
    """Show the email address an access token was issued to.

    Example::

        deskauth whoami client_secret.json --access-token file:~/token.txt
    """
    from deskauth.auth import OAuthAuthenticator
    from deskauth.config import load_oauth_config, resolve_credential, resolve_settings
    from deskauth.exceptions import DeskauthError
    from deskauth.models import OAuthToken

    try:
        settings = resolve_settings()
        config = load_oauth_config(client_file)
        token = OAuthToken(access_token=resolve_credential(access_token))
        email = OAuthAuthenticator(config, settings).get_user_email(token)
    except DeskauthError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None

    format_response({"user_email": email})
