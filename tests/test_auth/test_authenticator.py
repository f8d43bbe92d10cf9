"""Tests for OAuthAuthenticator: the full browser flow and token refresh.

The browser is replaced by a fake that follows the authorization URL's
``redirect_uri`` with a real HTTP request to the callback listener, so the
listener, state check and teardown run for real. Only the provider's token
and identity endpoints are mocked.
"""

from __future__ import annotations

import threading
from http.client import HTTPConnection
from typing import Any, Callable, Optional
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

from deskauth.auth.authenticator import OAuthAuthenticator
from deskauth.auth.callback_server import CallbackServer
from deskauth.auth.context import AuthContext
from deskauth.auth.pkce import PKCEChallenge, compute_code_challenge
from deskauth.exceptions import (
    AuthTimeoutError,
    BrowserLaunchError,
    IdentityLookupError,
    ListenerBindError,
    ProviderDeniedError,
    RandomSourceError,
    RefreshError,
    StateMismatchError,
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


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_token_response(
    access_token: str = "test-access-token",
    expires_in: int = 3600,
    refresh_token: Optional[str] = "test-refresh-token",
    scope: Optional[str] = None,
) -> dict[str, object]:
    """Build a mock token endpoint JSON response."""
    data: dict[str, object] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "token_type": "Bearer",
    }
    if refresh_token is not None:
        data["refresh_token"] = refresh_token
    if scope is not None:
        data["scope"] = scope
    return data


def _mock_response(json_body: Any, status_code: int = 200) -> MagicMock:
    """Create a mock httpx.Response with the given JSON body."""
    mock_response = MagicMock(spec=httpx.Response)
    mock_response.status_code = status_code
    mock_response.json.return_value = json_body
    mock_response.text = str(json_body)

    if status_code >= 400:
        mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
            message=f"HTTP {status_code}",
            request=MagicMock(),
            response=mock_response,
        )
    else:
        mock_response.raise_for_status.return_value = None
    return mock_response


def _mock_httpx_post(
    token_response: Optional[dict[str, object]] = None,
    status_code: int = 200,
) -> MagicMock:
    return _mock_response(token_response or _make_token_response(), status_code)


def _mock_httpx_get(
    json_response: Optional[dict[str, object]] = None,
    status_code: int = 200,
) -> MagicMock:
    return _mock_response(json_response or {"email": "user@example.com"}, status_code)


def _send_redirect(url: str) -> None:
    target = urlparse(url)
    conn = HTTPConnection(target.hostname, target.port, timeout=5)
    try:
        conn.request("GET", f"{target.path}?{target.query}")
        conn.getresponse().read()
    finally:
        conn.close()


class FakeBrowser:
    """Stands in for ``open_url``: records the URL and follows the redirect.

    Args:
        **overrides: Query parameters to put on (or, with ``None``, drop
            from) the redirect, e.g. ``state="forged"`` or
            ``error="access_denied"``.
    """

    def __init__(self, **overrides: Optional[str]) -> None:
        self.overrides = overrides
        self.urls: list[str] = []
        self.threads: list[threading.Thread] = []

    def __call__(self, url: str) -> None:
        self.urls.append(url)
        query = parse_qs(urlparse(url).query)
        params: dict[str, Optional[str]] = {"code": "auth-code-123", "state": query["state"][0]}
        params.update(self.overrides)
        redirect = query["redirect_uri"][0] + "?" + urlencode(
            {k: v for k, v in params.items() if v is not None}
        )
        thread = threading.Thread(target=_send_redirect, args=(redirect,), daemon=True)
        thread.start()
        self.threads.append(thread)

    @property
    def query(self) -> dict[str, list[str]]:
        return parse_qs(urlparse(self.urls[-1]).query)


def _assert_port_free(port: int) -> None:
    """The listener released its port if a new one can bind it."""
    probe = CallbackServer(port=port, state="probe")
    probe.start()
    probe.stop()


@pytest.fixture()
def authenticator(oauth_config: OAuthConfig, fast_settings: Settings) -> OAuthAuthenticator:
    return OAuthAuthenticator(oauth_config, fast_settings)


# ---------------------------------------------------------------------------
# Authorization URL
# ---------------------------------------------------------------------------


class TestBuildAuthUrl:
    def test_contains_required_parameters(self, authenticator: OAuthAuthenticator) -> None:
        pkce = PKCEChallenge(verifier="v" * 43, challenge=compute_code_challenge("v" * 43))
        url = authenticator.build_auth_url("state-xyz", pkce)
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert url.startswith("https://accounts.example.com/o/oauth2/auth?")
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["test-client.apps.googleusercontent.com"]
        assert query["redirect_uri"] == [authenticator.config.redirect_url]
        assert query["scope"] == ["https://www.googleapis.com/auth/pubsub"]
        assert query["state"] == ["state-xyz"]
        assert query["code_challenge"] == [pkce.challenge]
        assert query["code_challenge_method"] == ["S256"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]

    def test_never_contains_verifier(self, authenticator: OAuthAuthenticator) -> None:
        pkce = PKCEChallenge(verifier="secret-verifier-value", challenge="challenge-value")
        url = authenticator.build_auth_url("s", pkce)
        assert "secret-verifier-value" not in url
        assert "code_verifier" not in url

    def test_scopes_joined_with_spaces(self, fast_settings: Settings) -> None:
        config = OAuthConfig(
            client_id="cid",
            redirect_url="http://localhost:8888/callback",
            scopes=["openid", "email"],
        )
        url = OAuthAuthenticator(config, fast_settings).build_auth_url(
            "s", PKCEChallenge(verifier="v", challenge="c")
        )
        assert parse_qs(urlparse(url).query)["scope"] == ["openid email"]

    def test_appends_to_existing_query(self, fast_settings: Settings) -> None:
        config = OAuthConfig(
            client_id="cid",
            redirect_url="http://localhost:8888/callback",
            auth_url="https://idp.example.com/authorize?tenant=acme",
        )
        url = OAuthAuthenticator(config, fast_settings).build_auth_url(
            "s", PKCEChallenge(verifier="v", challenge="c")
        )
        assert url.startswith("https://idp.example.com/authorize?tenant=acme&")


# ---------------------------------------------------------------------------
# Full interactive flow
# ---------------------------------------------------------------------------


class TestAuthenticateSuccess:
    def test_full_flow(self, authenticator: OAuthAuthenticator) -> None:
        browser = FakeBrowser()
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=browser),
            patch(
                "deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()
            ) as mock_post,
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            result = authenticator.authenticate(AuthContext(timeout=10))

        assert result.success, result.error_msg
        assert result.error is None
        assert result.token is not None
        assert result.token.access_token == "test-access-token"
        assert result.token.refresh_token == "test-refresh-token"
        assert result.token.expiry is not None
        assert result.user_email == "user@example.com"

        data = mock_post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "auth-code-123"
        assert data["redirect_uri"] == authenticator.config.redirect_url
        assert data["client_id"] == "test-client.apps.googleusercontent.com"
        assert data["client_secret"] == "test-secret"

        # The verifier only travels in the token request and matches the challenge.
        verifier = data["code_verifier"]
        assert verifier not in browser.urls[0]
        assert browser.query["code_challenge"] == [compute_code_challenge(verifier)]

    def test_sends_user_agent_from_settings(self, authenticator: OAuthAuthenticator) -> None:
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch(
                "deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()
            ) as mock_post,
            patch(
                "deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()
            ) as mock_get,
        ):
            authenticator.authenticate()

        assert mock_post.call_args.kwargs["headers"]["User-Agent"] == "deskauth/9.9.9"
        get_headers = mock_get.call_args.kwargs["headers"]
        assert get_headers["Authorization"] == "Bearer test-access-token"
        assert get_headers["User-Agent"] == "deskauth/9.9.9"

    def test_fresh_pkce_and_state_per_attempt(self, authenticator: OAuthAuthenticator) -> None:
        browser = FakeBrowser()
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=browser),
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            assert authenticator.authenticate().success
            assert authenticator.authenticate().success

        first, second = (parse_qs(urlparse(u).query) for u in browser.urls)
        assert first["state"] != second["state"]
        assert first["code_challenge"] != second["code_challenge"]

    def test_state_transitions(self, oauth_config: OAuthConfig, fast_settings: Settings) -> None:
        states: list[FlowState] = []
        authenticator = OAuthAuthenticator(oauth_config, fast_settings, state_observer=states.append)
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            authenticator.authenticate()

        assert states == [
            FlowState.GENERATING_CHALLENGE,
            FlowState.LISTENER_STARTING,
            FlowState.AWAITING_BROWSER_REDIRECT,
            FlowState.AWAITING_CALLBACK,
            FlowState.EXCHANGING_CODE,
            FlowState.RESOLVING_IDENTITY,
            FlowState.SUCCEEDED,
            FlowState.IDLE,
        ]

    def test_identity_failure_falls_back_to_unknown(self, authenticator: OAuthAuthenticator) -> None:
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch(
                "deskauth.auth.authenticator.httpx.get",
                return_value=_mock_httpx_get({"error": "boom"}, status_code=500),
            ),
        ):
            result = authenticator.authenticate()

        assert result.success
        assert result.user_email == UNKNOWN_USER
        assert result.token is not None

    def test_listener_released_after_success(self, authenticator: OAuthAuthenticator) -> None:
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            assert authenticator.authenticate().success
        _assert_port_free(authenticator.config.callback_port)


class TestAuthenticateLoopbackHosts:
    """The listener must be reachable at whatever host the redirect names."""

    def _run(self, redirect_url: str, settings: Settings) -> AuthenticateResult:
        config = OAuthConfig(
            client_id="test-client.apps.googleusercontent.com",
            redirect_url=redirect_url,
            auth_url="https://accounts.example.com/o/oauth2/auth",
            token_url="https://oauth2.example.com/token",
        )
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            return OAuthAuthenticator(config, settings).authenticate(AuthContext(timeout=5))

    def test_ipv6_redirect(self, free_ipv6_port: int, fast_settings: Settings) -> None:
        result = self._run(f"http://[::1]:{free_ipv6_port}/callback", fast_settings)
        assert result.success, result.error_msg
        assert result.token is not None

    def test_localhost_redirect(self, free_port: int, fast_settings: Settings) -> None:
        result = self._run(f"http://localhost:{free_port}/callback", fast_settings)
        assert result.success, result.error_msg


class TestAuthenticateBrowser:
    def test_browser_failure_without_handler_reports_url(
        self, authenticator: OAuthAuthenticator
    ) -> None:
        with (
            patch(
                "deskauth.auth.authenticator.open_url",
                side_effect=BrowserLaunchError("No browser found"),
            ),
            patch("deskauth.auth.authenticator.httpx.post") as mock_post,
        ):
            result = authenticator.authenticate()

        assert not result.success
        assert isinstance(result.error, BrowserLaunchError)
        assert result.error_msg.startswith(
            "Failed to open browser. Please visit: https://accounts.example.com/o/oauth2/auth?"
        )
        assert result.auth_url is not None
        assert result.error.auth_url == result.auth_url
        assert result.auth_url in result.error_msg
        mock_post.assert_not_called()
        _assert_port_free(authenticator.config.callback_port)

    def test_browser_failure_with_handler_keeps_listening(
        self, oauth_config: OAuthConfig, fast_settings: Settings
    ) -> None:
        manual = FakeBrowser()
        authenticator = OAuthAuthenticator(oauth_config, fast_settings, manual_url_handler=manual)
        with (
            patch(
                "deskauth.auth.authenticator.open_url",
                side_effect=BrowserLaunchError("No browser found"),
            ),
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            result = authenticator.authenticate(AuthContext(timeout=10))

        assert result.success, result.error_msg
        assert len(manual.urls) == 1

    def test_browser_disabled_uses_handler(
        self, oauth_config: OAuthConfig, fast_settings: Settings
    ) -> None:
        manual = FakeBrowser()
        settings = fast_settings.model_copy(update={"open_browser": False})
        authenticator = OAuthAuthenticator(oauth_config, settings, manual_url_handler=manual)
        with (
            patch("deskauth.auth.authenticator.open_url") as mock_open,
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            result = authenticator.authenticate()

        assert result.success
        mock_open.assert_not_called()
        assert len(manual.urls) == 1


class TestAuthenticateFailures:
    def test_state_mismatch_never_exchanges_code(self, authenticator: OAuthAuthenticator) -> None:
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser(state="forged")),
            patch("deskauth.auth.authenticator.httpx.post") as mock_post,
        ):
            result = authenticator.authenticate()

        assert not result.success
        assert isinstance(result.error, StateMismatchError)
        assert result.token is None
        mock_post.assert_not_called()
        _assert_port_free(authenticator.config.callback_port)

    def test_provider_denial(self, authenticator: OAuthAuthenticator) -> None:
        browser = FakeBrowser(code=None, error="access_denied")
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=browser),
            patch("deskauth.auth.authenticator.httpx.post") as mock_post,
        ):
            result = authenticator.authenticate()

        assert isinstance(result.error, ProviderDeniedError)
        assert "access_denied" in result.error_msg
        mock_post.assert_not_called()

    def test_token_exchange_rejected(self, authenticator: OAuthAuthenticator) -> None:
        states: list[FlowState] = []
        authenticator._state_observer = states.append
        rejected = _mock_httpx_post(
            {"error": "invalid_grant", "error_description": "Code verifier mismatch"},
            status_code=400,
        )
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch("deskauth.auth.authenticator.httpx.post", return_value=rejected),
            patch("deskauth.auth.authenticator.httpx.get") as mock_get,
        ):
            result = authenticator.authenticate()

        assert not result.success
        assert isinstance(result.error, TokenExchangeError)
        assert result.error.status_code == 400
        assert "invalid_grant: Code verifier mismatch" in result.error_msg
        mock_get.assert_not_called()
        assert states[-2:] == [FlowState.FAILED, FlowState.IDLE]
        _assert_port_free(authenticator.config.callback_port)

    def test_malformed_token_response_is_a_failed_result(
        self, authenticator: OAuthAuthenticator
    ) -> None:
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch(
                "deskauth.auth.authenticator.httpx.post",
                return_value=_mock_httpx_post({"access_token": "a", "expires_in": "soon"}),
            ),
            patch("deskauth.auth.authenticator.httpx.get") as mock_get,
        ):
            result = authenticator.authenticate(AuthContext(timeout=10))

        assert not result.success
        assert isinstance(result.error, TokenExchangeError)
        assert "malformed token response" in result.error_msg
        mock_get.assert_not_called()
        _assert_port_free(authenticator.config.callback_port)

    def test_token_endpoint_unreachable(self, authenticator: OAuthAuthenticator) -> None:
        with (
            patch("deskauth.auth.authenticator.open_url", side_effect=FakeBrowser()),
            patch(
                "deskauth.auth.authenticator.httpx.post",
                side_effect=httpx.ConnectError("connection refused"),
            ),
        ):
            result = authenticator.authenticate()

        assert isinstance(result.error, TokenExchangeError)
        assert "connection refused" in result.error_msg

    def test_cancel_while_waiting(self, authenticator: OAuthAuthenticator) -> None:
        ctx = AuthContext(timeout=30)
        with (
            patch(
                "deskauth.auth.authenticator.open_url",
                side_effect=lambda url: threading.Timer(0.1, ctx.cancel).start(),
            ),
            patch("deskauth.auth.authenticator.httpx.post") as mock_post,
        ):
            result = authenticator.authenticate(ctx)

        assert isinstance(result.error, AuthTimeoutError)
        assert result.error_msg == "Authentication cancelled"
        mock_post.assert_not_called()
        _assert_port_free(authenticator.config.callback_port)

    def test_cancelled_before_browser_launch(self, authenticator: OAuthAuthenticator) -> None:
        ctx = AuthContext()
        ctx.cancel()
        with patch("deskauth.auth.authenticator.open_url") as mock_open:
            result = authenticator.authenticate(ctx)

        assert isinstance(result.error, AuthTimeoutError)
        mock_open.assert_not_called()

    def test_callback_timeout(self, oauth_config: OAuthConfig, fast_settings: Settings) -> None:
        settings = fast_settings.model_copy(update={"callback_timeout": 0.2})
        authenticator = OAuthAuthenticator(oauth_config, settings)
        with patch("deskauth.auth.authenticator.open_url"):
            result = authenticator.authenticate()

        assert isinstance(result.error, AuthTimeoutError)
        assert "Authentication timeout" in result.error_msg

    def test_port_in_use(self, authenticator: OAuthAuthenticator) -> None:
        blocker = CallbackServer(port=authenticator.config.callback_port, state="other-attempt")
        blocker.start()
        try:
            with patch("deskauth.auth.authenticator.open_url") as mock_open:
                result = authenticator.authenticate()
        finally:
            blocker.stop()

        assert isinstance(result.error, ListenerBindError)
        assert "already in use" in result.error_msg
        mock_open.assert_not_called()

    def test_concurrent_attempt_fails_without_disturbing_first(
        self, authenticator: OAuthAuthenticator
    ) -> None:
        second: list = []

        def _start_second_then_redirect(url: str) -> None:
            second.append(authenticator.authenticate())
            FakeBrowser()(url)

        with (
            patch(
                "deskauth.auth.authenticator.open_url", side_effect=_start_second_then_redirect
            ),
            patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()),
            patch("deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()),
        ):
            first = authenticator.authenticate(AuthContext(timeout=10))

        assert first.success, first.error_msg
        assert isinstance(second[0].error, ListenerBindError)

    def test_random_source_failure(self, authenticator: OAuthAuthenticator) -> None:
        with (
            patch(
                "deskauth.auth.authenticator.generate_pkce",
                side_effect=RandomSourceError("Cannot start secure authentication"),
            ),
            patch("deskauth.auth.authenticator.CallbackServer") as mock_server,
        ):
            result = authenticator.authenticate()

        assert isinstance(result.error, RandomSourceError)
        mock_server.assert_not_called()

    def test_raise_for_error(self, authenticator: OAuthAuthenticator) -> None:
        with patch(
            "deskauth.auth.authenticator.open_url", side_effect=FakeBrowser(state="forged")
        ):
            result = authenticator.authenticate()
        with pytest.raises(StateMismatchError):
            result.raise_for_error()


# ---------------------------------------------------------------------------
# Code exchange and identity
# ---------------------------------------------------------------------------


class TestExchangeCode:
    def test_missing_access_token(self, authenticator: OAuthAuthenticator) -> None:
        pkce = PKCEChallenge(verifier="v", challenge="c")
        with patch(
            "deskauth.auth.authenticator.httpx.post",
            return_value=_mock_httpx_post({"token_type": "Bearer"}),
        ):
            with pytest.raises(TokenExchangeError, match="missing 'access_token'"):
                authenticator.exchange_code("code", pkce)

    @pytest.mark.parametrize(
        "body",
        [
            {"access_token": "a", "expires_in": "soon"},
            {"access_token": "a", "expires_in": 10**400},
            {"access_token": "a", "expires_in": [3600]},
            {"access_token": 123},
            {"access_token": "a", "refresh_token": ["r"]},
        ],
    )
    def test_malformed_token_response(
        self, authenticator: OAuthAuthenticator, body: dict[str, object]
    ) -> None:
        pkce = PKCEChallenge(verifier="v", challenge="c")
        with patch(
            "deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post(body)
        ):
            with pytest.raises(TokenExchangeError, match="malformed token response"):
                authenticator.exchange_code("code", pkce)

    def test_non_json_response(self, authenticator: OAuthAuthenticator) -> None:
        pkce = PKCEChallenge(verifier="v", challenge="c")
        response = _mock_httpx_post()
        response.json.side_effect = ValueError("not json")
        with patch("deskauth.auth.authenticator.httpx.post", return_value=response):
            with pytest.raises(TokenExchangeError, match="not JSON"):
                authenticator.exchange_code("code", pkce)

    def test_cancelled_context(self, authenticator: OAuthAuthenticator) -> None:
        ctx = AuthContext()
        ctx.cancel()
        with patch("deskauth.auth.authenticator.httpx.post") as mock_post:
            with pytest.raises(AuthTimeoutError):
                authenticator.exchange_code("code", PKCEChallenge(verifier="v", challenge="c"), ctx)
        mock_post.assert_not_called()

    def test_timeout_bounded_by_context(self, authenticator: OAuthAuthenticator) -> None:
        with patch(
            "deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()
        ) as mock_post:
            authenticator.exchange_code(
                "code", PKCEChallenge(verifier="v", challenge="c"), AuthContext(timeout=1)
            )
        assert mock_post.call_args.kwargs["timeout"] <= 1

    def test_public_client_sends_no_secret(self, fast_settings: Settings) -> None:
        config = OAuthConfig(client_id="public", redirect_url="http://localhost:8888/callback")
        with patch(
            "deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()
        ) as mock_post:
            OAuthAuthenticator(config, fast_settings).exchange_code(
                "code", PKCEChallenge(verifier="v", challenge="c")
            )
        assert "client_secret" not in mock_post.call_args.kwargs["data"]


class TestGetUserEmail:
    def test_returns_email(self, authenticator: OAuthAuthenticator) -> None:
        with patch(
            "deskauth.auth.authenticator.httpx.get", return_value=_mock_httpx_get()
        ) as mock_get:
            email = authenticator.get_user_email(OAuthToken(access_token="tok"))
        assert email == "user@example.com"
        assert mock_get.call_args.args[0] == "https://www.example.com/oauth2/v2/userinfo"

    def test_missing_email(self, authenticator: OAuthAuthenticator) -> None:
        with patch(
            "deskauth.auth.authenticator.httpx.get",
            return_value=_mock_httpx_get({"id": "123"}),
        ):
            with pytest.raises(IdentityLookupError, match="no 'email'"):
                authenticator.get_user_email(OAuthToken(access_token="tok"))

    def test_unauthorized(self, authenticator: OAuthAuthenticator) -> None:
        with patch(
            "deskauth.auth.authenticator.httpx.get",
            return_value=_mock_httpx_get({"error": "invalid_token"}, status_code=401),
        ):
            with pytest.raises(IdentityLookupError, match="status 401"):
                authenticator.get_user_email(OAuthToken(access_token="tok"))


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


def _stored_token(refresh_token: str = "stored-refresh", **kwargs: Any) -> OAuthToken:
    return OAuthToken(access_token="old-access", refresh_token=refresh_token, **kwargs)


class TestRefreshToken:
    def test_refresh_keeps_old_refresh_token(self, authenticator: OAuthAuthenticator) -> None:
        response = _mock_httpx_post(_make_token_response("new-access", refresh_token=None))
        with patch(
            "deskauth.auth.authenticator.httpx.post", return_value=response
        ) as mock_post:
            token = authenticator.refresh_token(_stored_token())

        assert token.access_token == "new-access"
        assert token.refresh_token == "stored-refresh"
        assert token.expiry is not None

        data = mock_post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "stored-refresh"
        assert data["client_id"] == "test-client.apps.googleusercontent.com"
        assert data["client_secret"] == "test-secret"
        assert "code_verifier" not in data

    def test_refresh_uses_rotated_token(self, authenticator: OAuthAuthenticator) -> None:
        response = _mock_httpx_post(_make_token_response("new-access", refresh_token="rotated"))
        with patch("deskauth.auth.authenticator.httpx.post", return_value=response):
            token = authenticator.refresh_token(_stored_token())
        assert token.refresh_token == "rotated"

    def test_refresh_keeps_scopes_when_not_returned(self, authenticator: OAuthAuthenticator) -> None:
        with patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()):
            token = authenticator.refresh_token(_stored_token(scopes=["a", "b"]))
        assert token.scopes == ["a", "b"]

    @pytest.mark.parametrize("refresh", ["", "   ", "has space", "line\nbreak"])
    def test_unusable_refresh_token_short_circuits(
        self, authenticator: OAuthAuthenticator, refresh: str
    ) -> None:
        with patch("deskauth.auth.authenticator.httpx.post") as mock_post:
            with pytest.raises(RefreshError, match="sign in again"):
                authenticator.refresh_token(_stored_token(refresh))
        mock_post.assert_not_called()

    def test_revoked_refresh_token(self, authenticator: OAuthAuthenticator) -> None:
        response = _mock_httpx_post(
            {"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
            status_code=400,
        )
        with patch("deskauth.auth.authenticator.httpx.post", return_value=response):
            with pytest.raises(RefreshError) as exc_info:
                authenticator.refresh_token(_stored_token())

        assert exc_info.value.status_code == 400
        assert exc_info.value.detail.startswith("invalid_grant")
        assert "status 400" in str(exc_info.value)

    def test_network_error(self, authenticator: OAuthAuthenticator) -> None:
        with patch(
            "deskauth.auth.authenticator.httpx.post",
            side_effect=httpx.ReadTimeout("timed out"),
        ):
            with pytest.raises(RefreshError, match="Token refresh failed"):
                authenticator.refresh_token(_stored_token())

    def test_malformed_token_response(self, authenticator: OAuthAuthenticator) -> None:
        with patch(
            "deskauth.auth.authenticator.httpx.post",
            return_value=_mock_httpx_post({"access_token": "a", "expires_in": "soon"}),
        ):
            with pytest.raises(RefreshError, match="malformed token response"):
                authenticator.refresh_token(_stored_token())

    def test_cancelled_context(self, authenticator: OAuthAuthenticator) -> None:
        ctx = AuthContext()
        ctx.cancel()
        with patch("deskauth.auth.authenticator.httpx.post") as mock_post:
            with pytest.raises(RefreshError, match="cancelled"):
                authenticator.refresh_token(_stored_token(), ctx)
        mock_post.assert_not_called()

    def test_old_token_not_modified(self, authenticator: OAuthAuthenticator) -> None:
        old = _stored_token()
        with patch("deskauth.auth.authenticator.httpx.post", return_value=_mock_httpx_post()):
            authenticator.refresh_token(old)
        assert old.access_token == "old-access"
