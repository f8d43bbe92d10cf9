"""Exception hierarchy for deskauth.

All exceptions inherit from :class:`DeskauthError`, which carries an
``exit_code`` attribute mapped to a constant from :mod:`deskauth.exit_codes`.
The CLI entry point in :func:`deskauth.app.main` catches ``DeskauthError``
and exits with the appropriate code, while unexpected exceptions produce a
crash log and exit with :data:`EXIT_GENERIC_FAILURE`.

:meth:`~deskauth.auth.authenticator.OAuthAuthenticator.authenticate` does
not raise these; it stores them on the returned
:class:`~deskauth.models.AuthenticateResult` instead.

Subclass hierarchy::

    DeskauthError (exit 1)
    +-- ConfigError          (exit 2)
    +-- RandomSourceError    (exit 1)
    +-- ListenerBindError    (exit 4)
    +-- BrowserLaunchError   (exit 7)
    +-- AuthError            (exit 3)
    |   +-- ProviderDeniedError
    |   +-- StateMismatchError
    |   +-- TokenExchangeError
    |   +-- RefreshError
    +-- AuthTimeoutError     (exit 5)
    +-- IdentityLookupError  (exit 6)
"""

from __future__ import annotations

from typing import Optional

from deskauth.exit_codes import (
    EXIT_AUTH_FAILURE,
    EXIT_BROWSER_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_GENERIC_FAILURE,
    EXIT_INVALID_USAGE,
    EXIT_LISTENER_ERROR,
    EXIT_TIMEOUT,
)


class DeskauthError(Exception):
    """Base exception for all deskauth errors.

    Every subclass sets a class-level ``exit_code`` corresponding to one of
    the constants in :mod:`deskauth.exit_codes`.

    Args:
        message: Human-readable error description.
        exit_code: Optional override for the class-level exit code.
    """

    exit_code: int = EXIT_GENERIC_FAILURE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(DeskauthError):
    """Raised for a malformed client registration or settings file."""

    exit_code = EXIT_INVALID_USAGE


class RandomSourceError(DeskauthError):
    """Raised when the operating system's secure random source is unavailable."""


class ListenerBindError(DeskauthError):
    """Raised when the callback listener cannot bind its fixed local port."""

    exit_code = EXIT_LISTENER_ERROR

    def __init__(self, message: str, port: int = 0):
        super().__init__(message)
        self.port = port


class BrowserLaunchError(DeskauthError):
    """Raised when no system browser could be launched.

    ``auth_url`` holds the authorization URL so the caller can present it
    for manual opening.
    """

    exit_code = EXIT_BROWSER_ERROR

    def __init__(self, message: str, auth_url: Optional[str] = None):
        super().__init__(message)
        self.auth_url = auth_url


class AuthError(DeskauthError):
    """Raised when authentication did not complete."""

    exit_code = EXIT_AUTH_FAILURE


class ProviderDeniedError(AuthError):
    """The identity provider redirected back with an ``error`` parameter.

    Typically ``access_denied`` because the user declined consent.
    """

    def __init__(self, message: str, error: str = "", description: str = ""):
        super().__init__(message)
        self.error = error
        self.description = description


class StateMismatchError(AuthError):
    """The callback's ``state`` did not match the in-flight attempt.

    Either a stale redirect from an earlier attempt or a forged request.
    """


class TokenExchangeError(AuthError):
    """The token endpoint rejected the authorization code / verifier pair."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class RefreshError(AuthError):
    """The refresh token is missing, revoked or expired.

    The caller must fall back to a full interactive sign-in.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class AuthTimeoutError(DeskauthError):
    """No callback arrived in time, or the attempt was cancelled or stopped."""

    exit_code = EXIT_TIMEOUT


class IdentityLookupError(DeskauthError):
    """The user identity endpoint could not be queried."""

    exit_code = EXIT_CONNECTION_ERROR
