"""Cancellation token with an optional deadline.

An :class:`AuthContext` controls the lifetime of one sign-in attempt. The
GUI thread keeps a reference and calls :meth:`AuthContext.cancel` when the
user closes the dialog; the worker thread running
:meth:`~deskauth.auth.OAuthAuthenticator.authenticate` observes it at every
blocking step.

Waiters do not poll: they register a callback with
:meth:`AuthContext.add_done_callback` and block on their own primitive,
using :meth:`AuthContext.remaining` as the wait timeout.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class AuthContext:
    """Cancellable context with an optional deadline.

    Args:
        timeout: Seconds until the context expires. ``None`` means no deadline.
        parent: Optional parent; cancelling the parent cancels this context,
            and the earlier of the two deadlines applies.

    Example::

        ctx = AuthContext(timeout=120)
        threading.Thread(target=lambda: authenticator.authenticate(ctx)).start()
        ...
        ctx.cancel()  # user pressed "Cancel"
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional[AuthContext] = None) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self._deadline = deadline
        self._unlink_parent: Optional[Callable[[], None]] = None
        if parent is not None:
            self._unlink_parent = parent.add_done_callback(self.cancel)

    @classmethod
    def background(cls) -> AuthContext:
        """A context that is never cancelled and has no deadline."""
        return cls()

    def child(self, timeout: Optional[float] = None) -> AuthContext:
        """Derive a context that is cancelled together with this one."""
        return AuthContext(timeout=timeout, parent=self)

    @property
    def deadline(self) -> Optional[float]:
        """Deadline on the :func:`time.monotonic` clock, or ``None``."""
        return self._deadline

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def done(self) -> bool:
        """True once the context was cancelled or its deadline passed."""
        return self._cancelled or self.expired

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (never negative), or ``None``."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self) -> None:
        """Cancel the context and run the registered callbacks once."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_done_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run *callback* when the context is cancelled.

        If the context is already cancelled the callback runs immediately.
        Deadlines do not trigger callbacks; waiters time out on their own.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove
        callback()
        return lambda: None

    def release(self) -> None:
        """Detach from the parent so it stops holding a reference to this context."""
        if self._unlink_parent is not None:
            self._unlink_parent()
            self._unlink_parent = None

    def __repr__(self) -> str:
        remaining = self.remaining()
        left = "none" if remaining is None else f"{remaining:.1f}s"
        return f"AuthContext(cancelled={self._cancelled}, remaining={left})"
