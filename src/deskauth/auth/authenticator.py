"""OAuth2 Authorization Code flow with PKCE for desktop applications.

This module provides :class:`OAuthAuthenticator`, the only part of deskauth
that builds authorization URLs or touches PKCE material. One call to
:meth:`OAuthAuthenticator.authenticate` runs the whole interactive flow:

1. Generates a fresh PKCE pair and state token.
2. Starts the :class:`~deskauth.auth.callback_server.CallbackServer` on the
   registered loopback port.
3. Opens the authorization URL in the user's browser.
4. Waits for the redirect (or cancellation, or the timeout).
5. Exchanges the authorization code for tokens, presenting the verifier.
6. Looks up the user's email for display; failure here is not fatal.

The listener is stopped on every exit path.

:meth:`OAuthAuthenticator.refresh_token` is the non-interactive half: it
trades a refresh token for a new access token at the token endpoint.

See Also:
    :func:`deskauth.auth.session.ensure_token` for choosing between reuse,
    refresh and a new sign-in.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional
from urllib.parse import urlencode

import httpx

from deskauth.auth.browser import open_url
from deskauth.auth.callback_server import CallbackServer
from deskauth.auth.context import AuthContext
from deskauth.auth.pkce import PKCEChallenge, generate_pkce, generate_state
from deskauth.exceptions import (
    AuthTimeoutError,
    BrowserLaunchError,
    DeskauthError,
    IdentityLookupError,
    ListenerBindError,
    RandomSourceError,
    RefreshError,
    TokenExchangeError,
)
from deskauth.models import (
    UNKNOWN_USER,
    AuthenticateResult,
    FlowState,
    OAuthConfig,
    OAuthToken,
    Settings,
)

logger = logging.getLogger(__name__)

_REFRESH_TOKEN_RE = re.compile(r"^[\x21-\x7e]+$")

ManualUrlHandler = Callable[[str], None]
StateObserver = Callable[[FlowState], None]


def _provider_detail(response: httpx.Response) -> str:
    """Extract ``error`` / ``error_description`` from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(body, dict) and body.get("error"):
        detail = str(body["error"])
        if body.get("error_description"):
            detail += f": {body['error_description']}"
        return detail
    return response.text[:500]


class OAuthAuthenticator:
    """Runs the interactive sign-in and the token refresh for one client.

    Args:
        config: The client registration; immutable and shared by attempts.
        settings: Flow behaviour (timeouts, identity endpoint, user agent).
        manual_url_handler: Called with the authorization URL when the
            browser cannot be opened. When given, the flow keeps listening
            so the user can open the URL by hand; when omitted, the attempt
            fails immediately with the URL in its error message.
        state_observer: Called on every :class:`~deskauth.models.FlowState`
            transition, e.g. to update a progress label in the GUI. It runs
            on the thread calling :meth:`authenticate`.

    Example::

        authenticator = OAuthAuthenticator(config)
        result = authenticator.authenticate(AuthContext(timeout=300))
        if result.success:
            save(result.token)
    """

    def __init__(
        self,
        config: OAuthConfig,
        settings: Optional[Settings] = None,
        *,
        manual_url_handler: Optional[ManualUrlHandler] = None,
        state_observer: Optional[StateObserver] = None,
    ) -> None:
        self._config = config
        self._settings = settings or Settings()
        self._manual_url_handler = manual_url_handler
        self._state_observer = state_observer

    @property
    def config(self) -> OAuthConfig:
        return self._config

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Interactive flow
    # ------------------------------------------------------------------

    def authenticate(self, ctx: Optional[AuthContext] = None) -> AuthenticateResult:
        """Run the full browser sign-in and return its outcome.

        Never raises for flow failures: the returned
        :class:`~deskauth.models.AuthenticateResult` carries the structured
        error instead (call ``raise_for_error()`` to turn it into an
        exception).

        Args:
            ctx: Controls the attempt's lifetime. Cancelling it wakes the
                callback wait at once and aborts before each HTTP call.

        Returns:
            On success, a result with ``token`` (non-empty access token)
            and ``user_email`` set.
        """
        ctx = ctx or AuthContext.background()
        try:
            return self._authenticate(ctx)
        finally:
            self._transition(FlowState.IDLE)

    def _authenticate(self, ctx: AuthContext) -> AuthenticateResult:
        self._transition(FlowState.GENERATING_CHALLENGE)
        try:
            pkce = generate_pkce()
            state = generate_state()
        except RandomSourceError as exc:
            return self._fail(exc)

        self._transition(FlowState.LISTENER_STARTING)
        server = CallbackServer(
            port=self._config.callback_port,
            state=state,
            host=self._config.callback_host or self._settings.callback_host,
            path=self._config.callback_path,
            timeout=self._settings.callback_timeout,
        )
        try:
            server.start()
        except ListenerBindError as exc:
            return self._fail(exc)

        try:
            return self._complete(ctx, server, state, pkce)
        finally:
            try:
                server.stop()
            except OSError as exc:
                logger.warning("Failed to stop callback listener: %s", exc)

    def _complete(
        self,
        ctx: AuthContext,
        server: CallbackServer,
        state: str,
        pkce: PKCEChallenge,
    ) -> AuthenticateResult:
        auth_url = self.build_auth_url(state, pkce)

        self._transition(FlowState.AWAITING_BROWSER_REDIRECT)
        if ctx.done:
            return self._fail(AuthTimeoutError("Authentication cancelled"))

        browser_error: Optional[BrowserLaunchError] = None
        if self._settings.open_browser:
            try:
                open_url(auth_url)
            except BrowserLaunchError as exc:
                browser_error = exc
        else:
            browser_error = BrowserLaunchError("Automatic browser launch is disabled")

        if browser_error is not None:
            logger.warning("Could not open the system browser: %s", browser_error)
            if self._manual_url_handler is None:
                return self._fail(
                    BrowserLaunchError(
                        f"Failed to open browser. Please visit: {auth_url}", auth_url=auth_url
                    ),
                    auth_url=auth_url,
                )
            self._manual_url_handler(auth_url)

        self._transition(FlowState.AWAITING_CALLBACK)
        callback = server.wait_for_callback(ctx)
        if not callback.success:
            self._transition(FlowState.FAILED)
            return callback

        self._transition(FlowState.EXCHANGING_CODE)
        try:
            token = self.exchange_code(callback.auth_code, pkce, ctx)
        except (TokenExchangeError, AuthTimeoutError) as exc:
            return self._fail(exc)

        self._transition(FlowState.RESOLVING_IDENTITY)
        try:
            email = self.get_user_email(token, ctx)
        except IdentityLookupError as exc:
            logger.warning("Could not resolve the signed-in user: %s", exc)
            email = UNKNOWN_USER

        self._transition(FlowState.SUCCEEDED)
        logger.info("Authentication succeeded for %s", email)
        return AuthenticateResult(success=True, token=token, user_email=email)

    def build_auth_url(self, state: str, pkce: PKCEChallenge) -> str:
        """Build the authorization URL for one attempt.

        Requests offline access and forces the consent screen so a refresh
        token is issued even to a user who authorized the client before.
        Only the PKCE challenge is included; the verifier stays local.
        """
        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_url,
            "scope": " ".join(self._config.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
        }
        separator = "&" if "?" in self._config.auth_url else "?"
        return f"{self._config.auth_url}{separator}{urlencode(params)}"

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def exchange_code(
        self,
        code: str,
        pkce: PKCEChallenge,
        ctx: Optional[AuthContext] = None,
    ) -> OAuthToken:
        """Exchange an authorization code for tokens.

        Args:
            code: The code received on the callback listener.
            pkce: The pair whose challenge went into the authorization URL.
            ctx: Checked before the request and bounds its timeout.

        Returns:
            The issued :class:`~deskauth.models.OAuthToken`.

        Raises:
            TokenExchangeError: If the provider rejects the code/verifier
                pair or the request fails.
            AuthTimeoutError: If *ctx* is already done.
        """
        if ctx is not None and ctx.done:
            raise AuthTimeoutError("Authentication cancelled")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_url,
            "code_verifier": pkce.verifier,
        }
        return self._request_token(data, ctx, TokenExchangeError, "Token exchange")

    def refresh_token(
        self,
        old_token: OAuthToken,
        ctx: Optional[AuthContext] = None,
    ) -> OAuthToken:
        """Obtain a new access token using *old_token*'s refresh token.

        A missing or malformed refresh token fails without contacting the
        provider. If the provider omits a new refresh token, the old one is
        kept.

        Raises:
            RefreshError: If the refresh token is unusable, revoked or
                expired, or the request fails. The caller must fall back to
                :meth:`authenticate`.
        """
        refresh = (old_token.refresh_token or "").strip()
        if not refresh or not _REFRESH_TOKEN_RE.match(refresh):
            raise RefreshError("No usable refresh token; please sign in again")
        if ctx is not None and ctx.done:
            raise RefreshError("Token refresh cancelled")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh,
        }
        token = self._request_token(
            data, ctx, RefreshError, "Token refresh", previous_refresh_token=refresh
        )
        if not token.scopes and old_token.scopes:
            token = token.model_copy(update={"scopes": list(old_token.scopes)})
        logger.debug("Refreshed access token")
        return token

    def _request_token(
        self,
        data: dict[str, str],
        ctx: Optional[AuthContext],
        error_cls: type[TokenExchangeError] | type[RefreshError],
        what: str,
        previous_refresh_token: str = "",
    ) -> OAuthToken:
        """POST a grant to the token endpoint and parse the issued token."""
        data["client_id"] = self._config.client_id
        if self._config.client_secret:
            data["client_secret"] = self._config.client_secret

        try:
            response = httpx.post(
                self._config.token_url,
                data=data,
                headers=self._headers(),
                timeout=self._request_timeout(ctx),
            )
            response.raise_for_status()
            token_data = response.json()
        except httpx.HTTPStatusError as exc:
            detail = _provider_detail(exc.response)
            raise error_cls(
                f"{what} failed with status {exc.response.status_code}: {detail}",
                status_code=exc.response.status_code,
                detail=detail,
            ) from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"{what} failed: {exc}") from exc
        except ValueError as exc:
            raise error_cls(f"{what} returned a response that is not JSON") from exc

        if not isinstance(token_data, dict) or not token_data.get("access_token"):
            raise error_cls(f"{what} response missing 'access_token' field")
        # ValidationError is a ValueError subclass.
        try:
            return OAuthToken.from_token_response(
                token_data, previous_refresh_token=previous_refresh_token
            )
        except (ValueError, OverflowError, TypeError) as exc:
            raise error_cls(f"{what} returned a malformed token response") from exc

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def get_user_email(self, token: OAuthToken, ctx: Optional[AuthContext] = None) -> str:
        """Return the email of the user *token* was issued to.

        Raises:
            IdentityLookupError: If the identity endpoint cannot be queried
                or its response has no ``email``.
        """
        if ctx is not None and ctx.done:
            raise IdentityLookupError("Identity lookup cancelled")
        try:
            response = httpx.get(
                self._settings.userinfo_url,
                headers={**self._headers(), **token.authorization_header},
                timeout=self._request_timeout(ctx),
            )
            response.raise_for_status()
            info = response.json()
        except httpx.HTTPStatusError as exc:
            raise IdentityLookupError(
                f"Identity lookup failed with status {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise IdentityLookupError(f"Identity lookup failed: {exc}") from exc

        email = info.get("email") if isinstance(info, dict) else None
        if not email:
            raise IdentityLookupError("Identity response has no 'email' field")
        return str(email)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json", "User-Agent": self._settings.user_agent}

    def _request_timeout(self, ctx: Optional[AuthContext]) -> float:
        timeout = self._settings.http_timeout
        if ctx is not None:
            remaining = ctx.remaining()
            if remaining is not None:
                timeout = max(0.1, min(timeout, remaining))
        return timeout

    def _transition(self, state: FlowState) -> None:
        logger.debug("Authentication flow: %s", state.value)
        if self._state_observer is not None:
            self._state_observer(state)

    def _fail(self, error: DeskauthError, auth_url: Optional[str] = None) -> AuthenticateResult:
        self._transition(FlowState.FAILED)
        logger.info("Authentication failed: %s", error)
        return AuthenticateResult.failure(error, auth_url=auth_url)
