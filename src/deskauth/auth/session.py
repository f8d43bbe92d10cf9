"""Decide between reusing, refreshing and re-acquiring a token.

The application owns token persistence. Given whatever token it loaded,
:func:`ensure_token` returns one that is valid now:

* a stored token that has not expired is reused as is;
* an expired one is refreshed without user interaction;
* with no stored token, the interactive sign-in runs.

A failed refresh is reported rather than silently replaced by a browser
sign-in; re-authenticating is the user's decision.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Optional

from deskauth.auth.authenticator import OAuthAuthenticator
from deskauth.auth.context import AuthContext
from deskauth.exceptions import IdentityLookupError, RefreshError
from deskauth.models import UNKNOWN_USER, OAuthToken

logger = logging.getLogger(__name__)


class TokenSource(str, enum.Enum):
    """Where the token returned by :func:`ensure_token` came from."""

    STORED = "stored"
    REFRESHED = "refreshed"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionToken:
    """A currently valid token plus the identity it belongs to.

    When :attr:`source` is not ``STORED`` the caller should persist
    :attr:`token`.
    """

    token: OAuthToken = field(repr=False)
    user_email: str
    source: TokenSource

    @property
    def changed(self) -> bool:
        return self.source is not TokenSource.STORED


def ensure_token(
    authenticator: OAuthAuthenticator,
    stored: Optional[OAuthToken] = None,
    ctx: Optional[AuthContext] = None,
    resolve_identity: bool = True,
) -> SessionToken:
    """Return a valid token, refreshing or signing in as needed.

    Args:
        authenticator: Authenticator for the client registration.
        stored: The token the application loaded, if any.
        ctx: Bounds the refresh call or the interactive sign-in.
        resolve_identity: Look up the user's email for reused and refreshed
            tokens. A fresh sign-in always resolves it.

    Raises:
        RefreshError: If the stored token expired and could not be
            refreshed; the user must sign in again.
        DeskauthError: Whatever error ended an unsuccessful sign-in.
    """
    if stored is None:
        result = authenticator.authenticate(ctx)
        result.raise_for_error()
        assert result.token is not None
        return SessionToken(result.token, result.user_email, TokenSource.AUTHENTICATED)

    if stored.is_expired():
        try:
            token = authenticator.refresh_token(stored, ctx)
        except RefreshError as exc:
            raise RefreshError(
                f"Token refresh failed, please re-authenticate: {exc}",
                status_code=exc.status_code,
                detail=exc.detail,
            ) from exc
        source = TokenSource.REFRESHED
    else:
        token = stored
        source = TokenSource.STORED

    email = UNKNOWN_USER
    if resolve_identity:
        try:
            email = authenticator.get_user_email(token, ctx)
        except IdentityLookupError as exc:
            logger.warning("Could not resolve the signed-in user: %s", exc)
    return SessionToken(token, email, source)
