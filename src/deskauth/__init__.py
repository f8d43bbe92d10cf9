"""deskauth -- OAuth2 + PKCE sign-in for locally running desktop applications.

This package lets a desktop application obtain delegated access to a cloud
API on behalf of an interactive user: it opens the user's browser at the
identity provider, receives the redirect on a short-lived local listener,
and exchanges the authorization code for tokens using PKCE (:rfc:`7636`).

Typical usage::

    from deskauth.auth import AuthContext, OAuthAuthenticator
    from deskauth.config import load_oauth_config

    authenticator = OAuthAuthenticator(load_oauth_config("client_secret.json"))
    result = authenticator.authenticate(AuthContext(timeout=300))
    result.raise_for_error()
    print(result.user_email, result.token.access_token)

Modules:
    app: Typer application factory and CLI entry point.
    auth: PKCE, callback listener, browser launcher and the authenticator.
    models: Pydantic models shared across the package.
    config: XDG-aware settings and client registration loading.
    exceptions: Exception hierarchy with exit-code mapping.
    exit_codes: Numeric exit codes following clig.dev conventions.
    output: stdout/stderr formatting system with Rich support.
"""

__version__ = "0.3.0"
