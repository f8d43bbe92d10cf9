"""Desktop OAuth2 + PKCE authentication.

The main entry points are:

- :class:`OAuthAuthenticator` -- runs the interactive browser sign-in
  (:meth:`~OAuthAuthenticator.authenticate`) and the silent refresh
  (:meth:`~OAuthAuthenticator.refresh_token`).
- :class:`AuthContext` -- cancellation token and deadline for an attempt.
- :func:`ensure_token` -- reuse, refresh or re-acquire a caller-held token.

The lower-level pieces (:class:`CallbackServer`, :func:`generate_pkce`,
:func:`generate_state`, :func:`open_url`) are exported for testing and
for applications that assemble their own flow.

Typical usage::

    from deskauth.auth import AuthContext, OAuthAuthenticator

    authenticator = OAuthAuthenticator(config)
    result = authenticator.authenticate(AuthContext(timeout=300))
    result.raise_for_error()
"""

from deskauth.auth.authenticator import OAuthAuthenticator
from deskauth.auth.browser import open_url
from deskauth.auth.callback_server import CallbackServer
from deskauth.auth.context import AuthContext
from deskauth.auth.pkce import PKCEChallenge, compute_code_challenge, generate_pkce, generate_state
from deskauth.auth.session import SessionToken, TokenSource, ensure_token

__all__ = [
    "AuthContext",
    "CallbackServer",
    "OAuthAuthenticator",
    "PKCEChallenge",
    "SessionToken",
    "TokenSource",
    "compute_code_challenge",
    "ensure_token",
    "generate_pkce",
    "generate_state",
    "open_url",
]
