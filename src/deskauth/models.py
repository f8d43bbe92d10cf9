"""Canonical models shared across all deskauth modules.

This is the single source of truth for data shapes in the project. The
models fall into two groups:

**Configuration models** -- loaded once and treated as immutable:
    :class:`OAuthConfig` (the client registration with the identity
    provider) and :class:`Settings` (user-tunable behaviour of the flow).

**Flow models** -- produced while authenticating:
    :class:`OAuthToken`, :class:`AuthenticateResult` and :class:`FlowState`.

Configuration and token models use Pydantic v2. :class:`AuthenticateResult`
is a frozen dataclass because it carries the exception that explains a
failed attempt.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deskauth import __version__
from deskauth.exceptions import DeskauthError


# --- Provider defaults ---

DEFAULT_AUTH_URL = "https://accounts.google.com/o/oauth2/auth"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DEFAULT_CALLBACK_PORT = 8888
DEFAULT_REDIRECT_URL = f"http://localhost:{DEFAULT_CALLBACK_PORT}/callback"
DEFAULT_SCOPES = ["https://www.googleapis.com/auth/pubsub"]

EXPIRY_MARGIN = timedelta(minutes=1)
"""Tokens are treated as expired this long before their real expiry."""

UNKNOWN_USER = "unknown"
"""Identity reported when the user's email could not be resolved."""


# --- Configuration ---


class OAuthConfig(BaseModel):
    """Static client registration for the identity provider.

    Loaded once per authentication attempt (usually from a downloaded
    client JSON, see :func:`~deskauth.config.load_oauth_config`) and never
    mutated afterwards.

    The redirect URL must point at the loopback interface with an explicit
    port: that port is where the callback listener binds.

    Example::

        OAuthConfig(
            client_id="1234.apps.googleusercontent.com",
            client_secret="shh",
            redirect_url="http://localhost:8888/callback",
        )
    """

    model_config = ConfigDict(frozen=True)

    client_id: str = Field(description="OAuth client identifier")
    client_secret: Optional[str] = Field(
        default=None, description="Client secret; omitted for public clients"
    )
    redirect_url: str = Field(default=DEFAULT_REDIRECT_URL)
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    auth_url: str = Field(default=DEFAULT_AUTH_URL, description="Authorization endpoint")
    token_url: str = Field(default=DEFAULT_TOKEN_URL, description="Token endpoint")

    @field_validator("client_id")
    @classmethod
    def _client_id_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("client_id must not be empty")
        return value

    @field_validator("redirect_url")
    @classmethod
    def _redirect_is_loopback(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme != "http":
            raise ValueError(f"redirect_url must use http://, got {value!r}")
        if parsed.hostname not in ("localhost", "127.0.0.1", "::1"):
            raise ValueError(f"redirect_url must point at the loopback interface, got {value!r}")
        if parsed.port is None:
            raise ValueError(f"redirect_url must include an explicit port, got {value!r}")
        return value

    @field_validator("auth_url", "token_url")
    @classmethod
    def _endpoint_is_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"endpoint must be an absolute http(s) URL, got {value!r}")
        return value

    @property
    def callback_port(self) -> int:
        """Local port the callback listener binds, taken from :attr:`redirect_url`."""
        port = urlparse(self.redirect_url).port
        assert port is not None  # enforced by the validator
        return port

    @property
    def callback_host(self) -> Optional[str]:
        """Loopback address named by :attr:`redirect_url`, or None for ``localhost``.

        A literal address must be bound exactly; ``localhost`` leaves the
        choice to :attr:`Settings.callback_host`.
        """
        host = urlparse(self.redirect_url).hostname
        return None if host == "localhost" else host

    @property
    def callback_path(self) -> str:
        """Request path of the redirect (``/callback`` by default)."""
        return urlparse(self.redirect_url).path or "/"


class Settings(BaseModel):
    """User-tunable behaviour of the sign-in flow.

    Persisted at ``~/.config/deskauth/config.json`` and loaded by
    :func:`~deskauth.config.load_settings`. The application version lives
    here rather than in a module-level global so that everything reading it
    (for instance the ``User-Agent`` header) receives it explicitly.
    """

    callback_host: str = Field(
        default="127.0.0.1", description="Interface the callback listener binds"
    )
    callback_timeout: float = Field(
        default=300.0, gt=0, description="Seconds to wait for the browser redirect"
    )
    http_timeout: float = Field(
        default=30.0, gt=0, description="Timeout for token and identity requests"
    )
    userinfo_url: str = Field(
        default=DEFAULT_USERINFO_URL, description="Endpoint returning the user's email"
    )
    open_browser: bool = Field(
        default=True, description="Launch the system browser automatically"
    )
    app_version: str = Field(default=__version__)

    @property
    def user_agent(self) -> str:
        return f"deskauth/{self.app_version}"


# --- Tokens ---


class OAuthToken(BaseModel):
    """Delegated credential issued by the token endpoint.

    Ownership belongs to the caller: deskauth never writes tokens to disk.
    ``expiry`` is timezone-aware UTC; ``None`` means the provider did not
    say, and the token is treated as never expiring.
    """

    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    expiry: Optional[datetime] = None
    scopes: list[str] = Field(default_factory=list)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return True if the token expires within :data:`EXPIRY_MARGIN`."""
        if self.expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        return now + EXPIRY_MARGIN >= expiry

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"{self.token_type or 'Bearer'} {self.access_token}"}

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        previous_refresh_token: str = "",
        now: Optional[datetime] = None,
    ) -> OAuthToken:
        """Build a token from a token-endpoint JSON response.

        Providers commonly omit ``refresh_token`` on refresh grants; the
        previous refresh token is kept in that case.

        Args:
            data: Parsed JSON body containing at least ``access_token``.
            previous_refresh_token: Refresh token to keep if none is returned.
            now: Reference time for ``expires_in`` (defaults to now, UTC).
        """
        now = now or datetime.now(timezone.utc)
        expiry: Optional[datetime] = None
        expires_in = data.get("expires_in")
        if expires_in is not None:
            expiry = now + timedelta(seconds=float(expires_in))
        scope = data.get("scope")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            token_type=data.get("token_type") or "Bearer",
            expiry=expiry,
            scopes=scope.split() if isinstance(scope, str) else [],
        )


# --- Flow ---


class FlowState(str, enum.Enum):
    """Stages of a single :meth:`~deskauth.auth.OAuthAuthenticator.authenticate` call.

    ``FAILED`` is reachable from every stage except ``IDLE``. After the
    listener is torn down the authenticator returns to ``IDLE``.
    """

    IDLE = "idle"
    GENERATING_CHALLENGE = "generating_challenge"
    LISTENER_STARTING = "listener_starting"
    AWAITING_BROWSER_REDIRECT = "awaiting_browser_redirect"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"
    RESOLVING_IDENTITY = "resolving_identity"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthenticateResult:
    """Outcome of one authentication attempt, or of one listener wait.

    Produced once and never modified. A failed result keeps the structured
    exception in :attr:`error`; :meth:`raise_for_error` re-raises it.

    Attributes:
        success: Whether the attempt (or callback) succeeded.
        error_msg: Human-readable failure description, empty on success.
        token: The issued token; set only by a successful full flow.
        user_email: Resolved identity, :data:`UNKNOWN_USER` if lookup failed.
        auth_code: Raw authorization code; set only on a successful callback.
        error: The exception describing the failure.
        auth_url: The authorization URL, when the user must open it manually.
    """

    success: bool
    error_msg: str = ""
    token: Optional[OAuthToken] = field(default=None, repr=False)
    user_email: str = ""
    auth_code: str = field(default="", repr=False)
    error: Optional[DeskauthError] = None
    auth_url: Optional[str] = None

    @classmethod
    def failure(cls, error: DeskauthError, auth_url: Optional[str] = None) -> AuthenticateResult:
        return cls(success=False, error_msg=str(error), error=error, auth_url=auth_url)

    def raise_for_error(self) -> None:
        """Raise the stored exception if the attempt failed."""
        if self.success:
            return
        if self.error is not None:
            raise self.error
        raise DeskauthError(self.error_msg or "Authentication failed")
