"""Local HTTP listener that terminates the OAuth2 redirect.

:class:`CallbackServer` binds a fixed loopback port, waits for exactly one
redirect from the identity provider, validates its ``state`` against the
value generated for the in-flight attempt and hands back the authorization
code, or the reason there is none.

The outcome is a set-once slot guarded by a :class:`threading.Event`. Three
producers may fill it, and the first one wins:

* the request handler, when the redirect arrives;
* :meth:`CallbackServer.stop`;
* the caller's :class:`~deskauth.auth.context.AuthContext`, when cancelled.

:meth:`CallbackServer.wait_for_callback` blocks on that event alone, with
the context deadline (capped by the listener's own timeout) as the wait
timeout.

Requests after the outcome is decided, such as a duplicate redirect, get a
plain "you may close this window" page and are otherwise ignored.
"""

from __future__ import annotations

import hmac
import html
import logging
import socket
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from deskauth.auth.context import AuthContext
from deskauth.exceptions import (
    AuthError,
    AuthTimeoutError,
    ListenerBindError,
    ProviderDeniedError,
    StateMismatchError,
)
from deskauth.models import AuthenticateResult

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_TIMEOUT = 300.0

_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white; max-width: 28rem;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; color: {color}; }}
  p {{ color: #666; line-height: 1.5; }}
</style></head>
<body><div class="card">
  <h1>{heading}</h1>
  {body}
</div></body></html>"""


def _success_page() -> str:
    return _PAGE.format(
        title="Authentication Successful",
        color="#1a7f37",
        heading="&#x2705; Authentication Successful",
        body="<p>You can close this window and return to the application.</p>",
    )


def _error_page(message: str) -> str:
    safe = html.escape(message, quote=True)
    return _PAGE.format(
        title="Authentication Failed",
        color="#cc0000",
        heading="&#x274C; Authentication Failed",
        body=f"<p>{safe}</p><p>Please close this window and try again.</p>",
    )


def _close_page() -> str:
    return _PAGE.format(
        title="Authentication",
        color="#1a1a2e",
        heading="Nothing left to do here",
        body="<p>You may close this window.</p>",
    )


class _CallbackHTTPServer(ThreadingHTTPServer):
    """HTTP server bound to one :class:`CallbackServer`."""

    daemon_threads = True
    # SO_REUSEADDR lets a second socket steal a bound port on Windows.
    allow_reuse_address = sys.platform != "win32"

    def __init__(self, address: tuple[str, int], listener: CallbackServer) -> None:
        self.listener = listener
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(address, _CallbackHandler)


class _CallbackHandler(BaseHTTPRequestHandler):
    """Request handler for the redirect leg of the flow."""

    server: _CallbackHTTPServer

    def do_GET(self) -> None:
        listener = self.server.listener
        parsed = urlparse(self.path)

        if listener.finished:
            self._send_html(_close_page())
            return
        if parsed.path != listener.path:
            self.send_error(404)
            return

        result = listener._evaluate(parse_qs(parsed.query))
        if not listener._resolve(result):
            # Lost the race against another request, a stop or a cancel.
            self._send_html(_close_page())
            return
        if result.success:
            self._send_html(_success_page())
        else:
            self._send_html(_error_page(result.error_msg), status=400)

    def _send_html(self, content: str, status: int = 200) -> None:
        encoded = content.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Cache-Control", "no-store")
        self.send_header("Content-Security-Policy", "default-src 'none'; style-src 'unsafe-inline'")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, format: str, *args: Any) -> None:
        # The query string carries the code and state; log the path only.
        logger.debug(
            "Callback listener: %s %s", self.command, urlparse(self.path).path
        )


class CallbackServer:
    """Ephemeral loopback HTTP endpoint that receives the provider's redirect.

    Args:
        port: Port to bind. The flow uses a fixed, registered port; ``0``
            asks the OS for any free port (useful in tests).
        state: The state token generated for this attempt.
        host: Interface to bind (default ``"127.0.0.1"``).
        path: Redirect path that carries the callback (default ``/callback``).
        timeout: Upper bound in seconds for :meth:`wait_for_callback`,
            independent of the caller's context.

    Example::

        server = CallbackServer(8888, state)
        server.start()
        try:
            result = server.wait_for_callback(ctx)
        finally:
            server.stop()
    """

    def __init__(
        self,
        port: int,
        state: str,
        host: str = "127.0.0.1",
        path: str = "/callback",
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
    ) -> None:
        self._port = port
        self._state = state
        self._host = host
        self._path = path
        self._timeout = timeout
        self._lock = threading.Lock()
        self._server: Optional[_CallbackHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._result: Optional[AuthenticateResult] = None
        self._done = threading.Event()

    @property
    def port(self) -> int:
        """The bound port (the OS-assigned one when created with ``port=0``)."""
        return self._port

    @property
    def path(self) -> str:
        return self._path

    @property
    def redirect_uri(self) -> str:
        host = f"[{self._host}]" if ":" in self._host else self._host
        return f"http://{host}:{self._port}{self._path}"

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def finished(self) -> bool:
        """True once the outcome of this listener has been decided."""
        return self._done.is_set()

    def start(self) -> None:
        """Bind the port and start serving on a daemon thread.

        The socket is listening when this returns, so the browser can be
        launched immediately afterwards.

        Raises:
            ListenerBindError: If the port is already in use or the listener
                was already started.
        """
        with self._lock:
            if self._server is not None:
                raise ListenerBindError(
                    f"Callback listener on port {self._port} is already running", self._port
                )
            try:
                server = _CallbackHTTPServer((self._host, self._port), self)
            except OSError as exc:
                raise ListenerBindError(
                    f"Port {self._port} is already in use. Please close any open "
                    "authentication windows and try again.",
                    self._port,
                ) from exc
            self._server = server
            self._port = server.server_address[1]
            self._thread = threading.Thread(
                target=server.serve_forever,
                kwargs={"poll_interval": 0.1},
                name=f"deskauth-callback-{self._port}",
                daemon=True,
            )
            self._thread.start()
        logger.info("Callback listener started on %s", self.redirect_uri)

    def wait_for_callback(self, ctx: Optional[AuthContext] = None) -> AuthenticateResult:
        """Block until the callback arrives, *ctx* is done, or :meth:`stop` runs.

        Args:
            ctx: Context bounding the wait. Cancelling it wakes the waiter
                immediately.

        Returns:
            A successful :class:`~deskauth.models.AuthenticateResult` whose
            ``auth_code`` holds the code, or a failed one whose ``error`` is a
            :class:`~deskauth.exceptions.StateMismatchError`,
            :class:`~deskauth.exceptions.ProviderDeniedError`,
            :class:`~deskauth.exceptions.AuthError` or
            :class:`~deskauth.exceptions.AuthTimeoutError`.
        """
        ctx = ctx or AuthContext.background()
        remove = ctx.add_done_callback(
            lambda: self._resolve(AuthenticateResult.failure(AuthTimeoutError("Authentication cancelled")))
        )
        try:
            remaining = ctx.remaining()
            ctx_bound = remaining is not None and remaining < self._timeout
            timeout = remaining if ctx_bound else self._timeout
            if not self._done.wait(timeout):
                if ctx_bound or ctx.done:
                    error = AuthTimeoutError("Authentication timeout")
                else:
                    error = AuthTimeoutError(
                        f"Authentication timeout ({self._timeout / 60:g} minutes)"
                    )
                self._resolve(AuthenticateResult.failure(error))
        finally:
            remove()

        assert self._result is not None
        return self._result

    def stop(self) -> None:
        """Shut the listener down and release the port.

        Idempotent, and safe before :meth:`start` or after the callback. A
        waiter still blocked in :meth:`wait_for_callback` is woken with a
        timeout failure.
        """
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        self._resolve(AuthenticateResult.failure(AuthTimeoutError("Callback listener stopped")))
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=5)
        logger.info("Callback listener on port %d stopped", self._port)

    def __enter__(self) -> CallbackServer:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Internals shared with the request handler
    # ------------------------------------------------------------------

    def _resolve(self, result: AuthenticateResult) -> bool:
        """Store *result* unless an outcome exists already. Returns True if stored."""
        with self._lock:
            if self._done.is_set():
                return False
            self._result = result
            self._done.set()
            return True

    def _evaluate(self, params: dict[str, list[str]]) -> AuthenticateResult:
        """Turn the redirect's query parameters into an outcome."""
        state = params.get("state", [""])[0]
        if not hmac.compare_digest(state.encode("utf-8"), self._state.encode("utf-8")):
            logger.error(
                "Rejected OAuth callback with mismatched state; possible CSRF or a "
                "redirect from a previous attempt"
            )
            return AuthenticateResult.failure(
                StateMismatchError(
                    "Invalid state parameter. This might be from a previous authentication "
                    "attempt. Please close any open browser windows and try again."
                )
            )

        error = params.get("error", [""])[0]
        if error:
            description = params.get("error_description", [""])[0]
            message = f"Authentication was not completed: {error}"
            if description:
                message += f" ({description})"
            logger.info("Identity provider reported an error: %s", error)
            return AuthenticateResult.failure(ProviderDeniedError(message, error, description))

        code = params.get("code", [""])[0]
        if not code:
            return AuthenticateResult.failure(AuthError("No authorization code received"))

        logger.debug("Received authorization code on the callback listener")
        return AuthenticateResult(success=True, auth_code=code)
