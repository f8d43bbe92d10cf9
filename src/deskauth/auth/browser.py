"""Open the user's default browser at a URL.

Best effort: a headless machine or one without a registered browser makes
:func:`open_url` raise :class:`~deskauth.exceptions.BrowserLaunchError`, and
the caller is expected to show the URL for manual opening instead.
"""

from __future__ import annotations

import logging
import webbrowser

from deskauth.exceptions import BrowserLaunchError

logger = logging.getLogger(__name__)


def open_url(url: str) -> None:
    """Open *url* in a new tab of the default browser.

    Graphical browsers are spawned as background processes, so this returns
    without waiting for the user.

    Raises:
        BrowserLaunchError: If no browser is available or it refused the URL.
    """
    try:
        browser = webbrowser.get()
    except webbrowser.Error as exc:
        raise BrowserLaunchError(f"No browser found: {exc}", auth_url=url) from exc

    try:
        opened = browser.open(url, new=2)
    except OSError as exc:
        raise BrowserLaunchError(f"Failed to launch browser: {exc}", auth_url=url) from exc
    if not opened:
        raise BrowserLaunchError("Browser did not accept the URL", auth_url=url)
    logger.debug("Opened system browser for authorization")
